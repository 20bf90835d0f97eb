#!/usr/bin/env python3
"""
Cached README asset fetcher.

Reads assets-to-fetch.json (array of {"url": ..., "out": ...}), downloads every
URL, picks a file extension (explicit on `out`, else Content-Type, else magic
bytes, else .bin), writes the file only when its bytes changed, then stages,
commits and pushes exactly the changed files.

Environment Variables:
  ASSET_MAPPING     : mapping file path. Default assets-to-fetch.json (cwd).
  FETCH_TIMEOUT     : seconds allowed per download (connect + body). Default 30.
  FETCH_CONCURRENCY : parallel downloads. Default 6.
  VCS_BACKEND       : 'cli' => git binary, 'gitpython' => GitPython. Default cli.
  COMMIT_MESSAGE    : commit message for refreshed assets.
  SKIP_GIT          : '1' => leave changed files uncommitted.
  DEBUG             : '1' => verbose output.

Exit code is 0 unless the mapping file is missing or malformed.
"""

from __future__ import annotations
import os
import sys
import json
import re
import socket
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests

import vcs

# ------------------ Config & Env ------------------
def _env_number(name: str, default, cast):
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        print(f"Invalid {name}={raw!r}. Using default {default}.")
        return default

MAPPING_FILE = os.environ.get("ASSET_MAPPING") or "assets-to-fetch.json"
FETCH_TIMEOUT = _env_number("FETCH_TIMEOUT", 30.0, float)
CONCURRENCY = max(1, _env_number("FETCH_CONCURRENCY", 6, int))
VCS_BACKEND = os.environ.get("VCS_BACKEND", "cli").strip().lower() or "cli"
COMMIT_MESSAGE = os.environ.get("COMMIT_MESSAGE") or "chore: update cached README assets (automated)"
SKIP_GIT = os.environ.get("SKIP_GIT", "0") == "1"
DEBUG = os.environ.get("DEBUG", "0") == "1"

BOT_NAME = "github-actions[bot]"
BOT_EMAIL = "github-actions[bot]@users.noreply.github.com"

HEADERS = {
    "User-Agent": "readme-asset-cache",
    "Accept": "image/*,*/*;q=0.8",
    "Cache-Control": "no-cache",
}
CHUNK_SIZE = 64 * 1024
SNIFF_BYTES = 2048
FALLBACK_EXT = "bin"

CTYPE_MAP: Dict[str, str] = {
    "image/svg+xml": "svg",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "text/plain": "txt",
    "application/json": "json",
}

EXTENSION_RE = re.compile(r"\.[a-zA-Z0-9]+$")

CHANGED = "changed"
UNCHANGED = "unchanged"
FAILED = "failed"


class MappingError(RuntimeError):
    """Mapping file is missing, unreadable or not a JSON array."""


class FetchTimeout(requests.Timeout):
    """Download did not finish within FETCH_TIMEOUT."""


def log(msg: str):
    print(f"[fetch-assets] {msg}")

def warn(msg: str):
    print(f"[fetch-assets][WARN] {msg}")

def error(msg: str):
    print(f"[fetch-assets][ERROR] {msg}", file=sys.stderr)

def debug(msg: str):
    if DEBUG:
        print(f"[DEBUG] {msg}")

# ------------------ Type Detection ------------------
def has_extension(name: str) -> bool:
    return bool(EXTENSION_RE.search(name))

def ext_from_content_type(ctype: Optional[str]) -> str:
    key = (ctype or "").split(";")[0].strip().lower()
    return CTYPE_MAP.get(key, "")

def ext_from_bytes(data: bytes) -> str:
    """Guess an extension from leading magic bytes. Empty string when unknown."""
    head = data[:SNIFF_BYTES]
    if b"<svg" in head.lower():
        return "svg"
    if len(data) >= 8 and head[:4] == b"\x89PNG":
        return "png"
    if head[:2] == b"\xff\xd8":
        return "jpg"
    if head[:6].lower() in (b"gif87a", b"gif89a"):
        return "gif"
    if len(data) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    if head[:4] == b"\x00\x00\x01\x00":
        return "ico"
    return ""

def resolve_out_path(out: str, ctype: Optional[str], data: bytes) -> str:
    """Final destination for `out`.

    An extension already on `out` always wins; otherwise the declared
    Content-Type, then the payload signature, then FALLBACK_EXT.
    """
    if has_extension(out):
        return out
    ext = ext_from_content_type(ctype) or ext_from_bytes(data) or FALLBACK_EXT
    return f"{out}.{ext}"

# ------------------ Filesystem ------------------
def file_matches(path: str, data: bytes) -> bool:
    try:
        existing = Path(path).read_bytes()
    except FileNotFoundError:
        return False
    return existing == data

def write_file(path: str, data: bytes):
    """Write through a sibling temp file; the old asset stays intact if the write fails."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise

# ------------------ Network ------------------
def _abort_transfer(r):
    """Shut the response socket down so a blocked read returns immediately."""
    conn = getattr(getattr(r, "raw", None), "connection", None)
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        debug(f"socket shutdown after deadline: {e}")

def fetch_with_timeout(url: str, timeout: float) -> Tuple[bytes, str]:
    """GET `url` and return (body, content_type).

    Raises requests.RequestException for connection errors and any non-2xx
    final status, FetchTimeout when connect + body take longer than `timeout`.
    A watchdog timer cuts the connection at the deadline, so a server that
    trickles bytes cannot hold the worker past it.
    """
    expired = threading.Event()
    holder: Dict[str, Any] = {}

    def expire():
        expired.set()
        if "response" in holder:
            _abort_transfer(holder["response"])

    timer = threading.Timer(timeout, expire)
    timer.daemon = True
    timer.start()
    try:
        with requests.get(url, headers=HEADERS, timeout=timeout, stream=True, allow_redirects=True) as r:
            holder["response"] = r
            if expired.is_set():
                raise FetchTimeout(f"no response within {timeout:g}s")
            if not 200 <= r.status_code < 300:
                raise requests.HTTPError(f"HTTP {r.status_code} {r.reason or ''}".rstrip(), response=r)
            ctype = r.headers.get("Content-Type") or ""
            chunks: List[bytes] = []
            try:
                for chunk in r.iter_content(CHUNK_SIZE):
                    if expired.is_set():
                        break
                    if chunk:
                        chunks.append(chunk)
            except (requests.RequestException, OSError):
                if not expired.is_set():
                    raise
            if expired.is_set():
                raise FetchTimeout(f"download exceeded {timeout:g}s")
    finally:
        timer.cancel()
    return b"".join(chunks), ctype

# ------------------ Mapping ------------------
def read_mapping(path: str) -> List[Any]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise MappingError(f"{path} not found (run init_mapping.py to create a sample)")
    except (OSError, UnicodeDecodeError) as e:
        raise MappingError(f"cannot read {path}: {e}")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MappingError(f"{path} is not valid JSON: {e}")
    if not isinstance(parsed, list):
        raise MappingError(f"{path} must be an array of {{url, out}}")
    return parsed

def is_valid_entry(entry: Any) -> bool:
    if not isinstance(entry, dict):
        return False
    url, out = entry.get("url"), entry.get("out")
    return isinstance(url, str) and bool(url.strip()) and isinstance(out, str) and bool(out.strip())

# ------------------ Sync ------------------
def sync_entry(index: int, entry: Dict[str, str], total: int) -> Tuple[str, Optional[str]]:
    """Fetch one mapping entry and write it if it changed.

    Returns (outcome, final_path). Failures are reported, never raised.
    """
    url, out = entry["url"], entry["out"]
    log(f"Processing [{index + 1}/{total}] {url}")
    try:
        data, ctype = fetch_with_timeout(url, FETCH_TIMEOUT)
    except requests.Timeout as e:
        warn(f"Timed out fetching {url}: {e}")
        return FAILED, None
    except requests.RequestException as e:
        warn(f"Failed to fetch {url}: {e}")
        return FAILED, None

    final_out = resolve_out_path(out, ctype, data)
    debug(f"{url}: {len(data)} bytes, content-type={ctype or 'unknown'} -> {final_out}")
    try:
        if file_matches(final_out, data):
            log(f"No change: {final_out}")
            return UNCHANGED, final_out
        write_file(final_out, data)
    except OSError as e:
        warn(f"Failed to write {final_out}: {e}")
        return FAILED, final_out
    log(f"Saved: {final_out} (detected: {ctype or 'unknown'})")
    return CHANGED, final_out

def sync_assets(mapping: List[Any], workers: Optional[int] = None) -> List[str]:
    """Process every mapping entry on a bounded pool; return changed paths in mapping order."""
    total = len(mapping)
    jobs: List[Tuple[int, Dict[str, str]]] = []
    claimed = set()
    for idx, entry in enumerate(mapping):
        if not is_valid_entry(entry):
            warn(f"Skipping invalid mapping at index {idx}")
            continue
        if entry["out"] in claimed:
            warn(f"Skipping duplicate destination {entry['out']!r} at index {idx}")
            continue
        claimed.add(entry["out"])
        jobs.append((idx, entry))

    counts = {CHANGED: 0, UNCHANGED: 0, FAILED: 0, "skipped": total - len(jobs)}
    changed: Dict[int, str] = {}
    with ThreadPoolExecutor(max_workers=workers or CONCURRENCY) as ex:
        futures = {ex.submit(sync_entry, idx, entry, total): idx for idx, entry in jobs}
        for fut in as_completed(futures):
            outcome, path = fut.result()
            counts[outcome] += 1
            if outcome == CHANGED:
                changed[futures[fut]] = path

    log("Fetched {} entries: {changed} changed, {unchanged} unchanged, {failed} failed, {skipped} skipped".format(total, **counts))
    result: List[str] = []
    for idx in sorted(changed):
        if changed[idx] not in result:
            result.append(changed[idx])
    return result

# ------------------ Versioning ------------------
def commit_changes(changed: List[str], versioner) -> bool:
    """Stage, commit and push `changed`. Returns True only when pushed."""
    if not changed:
        return False
    if SKIP_GIT:
        log("SKIP_GIT=1; leaving changes uncommitted.")
        return False
    if not versioner.is_repo():
        warn("Git not available or not a repository; changes saved locally.")
        return False

    identity = versioner.ensure_identity(BOT_NAME, BOT_EMAIL)
    if not identity.ok:
        warn(f"Could not configure git identity: {identity.output}")
    staged = versioner.stage(changed)
    if not staged.ok:
        warn(f"git add failed: {staged.output}")
        return False
    committed = versioner.commit(COMMIT_MESSAGE)
    if not committed.ok:
        log(f"No commit created (nothing to commit). {committed.output}".rstrip())
        return False
    pushed = versioner.push()
    if not pushed.ok:
        warn(f"git push failed: {pushed.output}")
        return False
    log("Changes pushed.")
    return True

# ------------------ Main ------------------
def main(versioner=None) -> int:
    log("Starting fetch-and-commit")
    t0 = time.time()
    try:
        mapping = read_mapping(MAPPING_FILE)
    except MappingError as e:
        error(f"Fatal: {e}")
        return 1

    if not mapping:
        log("Mapping is empty; nothing to do.")
        return 0

    changed = sync_assets(mapping)
    if not changed:
        log("No files changed. Exiting.")
    else:
        log(f"Changed files: {changed}")
        if versioner is None:
            try:
                versioner = vcs.get_versioner(VCS_BACKEND)
            except (ValueError, ImportError) as e:
                warn(f"Version control backend {VCS_BACKEND!r} unavailable: {e}; changes saved locally.")
        if versioner is not None:
            commit_changes(changed, versioner)

    print("Done in {:.2f}s".format(time.time() - t0))
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
