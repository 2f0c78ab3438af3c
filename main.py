#!/usr/bin/env python3
"""
Development launcher for lanrelay.

- `python main.py` runs the service in the foreground (same as `serve`)
- Any other arguments are passed through to the lanrelay CLI
- Ctrl-C exits cleanly
"""

import sys

from lanrelay import service


def main() -> int:
    argv = sys.argv[1:] or ["serve"]
    return service.main(argv)


if __name__ == "__main__":
    raise SystemExit(main())
