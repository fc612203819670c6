"""
Entry point for `python -m execguard`.
"""

import sys

from execguard.cli import main


if __name__ == "__main__":
    sys.exit(main())
