"""Entry point for `python -m levy`."""

import sys

from levy.cli.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
