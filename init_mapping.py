#!/usr/bin/env python3
"""Create a sample assets-to-fetch.json to edit by hand.
Usage:
  python init_mapping.py                      # writes ./assets-to-fetch.json
  python init_mapping.py path/to/mapping.json

Never overwrites an existing mapping. Idempotent.
"""
from __future__ import annotations
import sys, json, pathlib

DEFAULT_MAPPING = 'assets-to-fetch.json'

SAMPLE = [
    {
        'url': 'https://github-readme-stats.vercel.app/api?username=your-username&show_icons=true&theme=highcontrast&hide_border=true&rank_icon=github',
        'out': 'assets/github-stats',
    },
    {
        'url': 'https://github-readme-streak-stats.herokuapp.com/?user=your-username&theme=highcontrast&hide_border=true',
        'out': 'assets/streaks',
    },
    {
        'url': 'https://github-readme-stats.vercel.app/api/top-langs/?username=your-username&layout=compact&theme=highcontrast&hide_border=true',
        'out': 'assets/top-langs.svg',
    },
]

def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    target = pathlib.Path(args[0] if args else DEFAULT_MAPPING)
    if target.exists():
        print(f'{target} already exists; leaving it untouched')
        return 0
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(SAMPLE, indent=2) + '\n', encoding='utf-8')
    except OSError as e:
        print(f'cannot write {target}: {e}', file=sys.stderr)
        return 1
    print(f'Created sample {target}. Edit it with the URLs you want and re-run the workflow.')
    return 0

if __name__ == '__main__':
    raise SystemExit(main())
