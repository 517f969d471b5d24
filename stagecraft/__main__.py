"""Main entry point for the stagecraft command line tool."""

import sys

from stagecraft.cli import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
