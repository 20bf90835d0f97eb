"""Version control backends for committing refreshed assets.

Both backends expose the same small surface:

  is_repo() -> bool
  ensure_identity(name, email) -> GitResult   set user.name / user.email only when unset
  stage(paths) -> GitResult
  commit(message) -> GitResult
  push() -> GitResult

Failures come back as GitResult(ok=False, output=...) rather than exceptions,
so the caller decides what is fatal.
"""

from __future__ import annotations
import subprocess
from typing import List, NamedTuple, Optional, Sequence


class GitResult(NamedTuple):
    ok: bool
    output: str = ""


class GitCli:
    """Drives the `git` executable in `cwd` (default: current directory)."""

    def __init__(self, cwd: Optional[str] = None, git: str = "git"):
        self.cwd = cwd
        self.git = git

    def _run(self, *args: str) -> GitResult:
        try:
            proc = subprocess.run(
                [self.git, *args],
                cwd=self.cwd,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            return GitResult(False, f"cannot run {self.git}: {e}")
        output = (proc.stdout + proc.stderr).strip()
        return GitResult(proc.returncode == 0, output)

    def is_repo(self) -> bool:
        res = self._run("rev-parse", "--is-inside-work-tree")
        return res.ok and res.output.splitlines()[:1] == ["true"]

    def ensure_identity(self, name: str, email: str) -> GitResult:
        for key, value in (("user.name", name), ("user.email", email)):
            if self._run("config", key).ok:
                continue
            res = self._run("config", key, value)
            if not res.ok:
                return res
        return GitResult(True)

    def stage(self, paths: Sequence[str]) -> GitResult:
        return self._run("add", "--", *paths)

    def commit(self, message: str) -> GitResult:
        return self._run("commit", "-m", message)

    def push(self) -> GitResult:
        return self._run("push")


class GitPythonRepo:
    """Same operations through GitPython instead of the command line."""

    def __init__(self, cwd: Optional[str] = None):
        import git  # GitPython refuses to import without a git executable

        self._git = git
        self.cwd = cwd or "."
        self._repo = None

    @property
    def repo(self):
        if self._repo is None:
            self._repo = self._git.Repo(self.cwd, search_parent_directories=True)
        return self._repo

    def is_repo(self) -> bool:
        try:
            return not self.repo.bare
        except (self._git.InvalidGitRepositoryError, self._git.NoSuchPathError):
            return False

    def ensure_identity(self, name: str, email: str) -> GitResult:
        try:
            reader = self.repo.config_reader()
            missing = [(k, v) for k, v in (("name", name), ("email", email)) if not reader.has_option("user", k)]
            if missing:
                with self.repo.config_writer() as writer:
                    for key, value in missing:
                        writer.set_value("user", key, value)
        except (OSError, self._git.GitCommandError) as e:
            return GitResult(False, str(e))
        return GitResult(True)

    def stage(self, paths: Sequence[str]) -> GitResult:
        try:
            return GitResult(True, self.repo.git.add("--", *paths))
        except self._git.GitCommandError as e:
            return GitResult(False, str(e))

    def commit(self, message: str) -> GitResult:
        try:
            return GitResult(True, self.repo.git.commit("-m", message))
        except self._git.GitCommandError as e:
            return GitResult(False, str(e))

    def push(self) -> GitResult:
        try:
            remote = self.repo.remote()
        except ValueError as e:
            return GitResult(False, str(e))
        try:
            infos = remote.push()
        except self._git.GitCommandError as e:
            return GitResult(False, str(e))
        errors: List[str] = [i.summary.strip() for i in infos if i.flags & i.ERROR]
        if errors:
            return GitResult(False, "; ".join(errors))
        return GitResult(True, "; ".join(i.summary.strip() for i in infos))


BACKENDS = {
    "cli": GitCli,
    "gitpython": GitPythonRepo,
}


def get_versioner(backend: str = "cli", cwd: Optional[str] = None):
    try:
        factory = BACKENDS[backend]
    except KeyError:
        raise ValueError(f"unknown VCS backend {backend!r} (expected one of {', '.join(BACKENDS)})")
    return factory(cwd)
