import sys

from claude_pings.cli import main

if __name__ == "__main__":
    sys.exit(main())
