import sys

from vpskit.cli import main

if __name__ == "__main__":
    sys.exit(main())
