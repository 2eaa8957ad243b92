"""
Allow running driftalign as a module: python -m driftalign

Author: driftalign developers
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
