import sys

from chainsync.cli import main

# python backend/main.py index update (same as the `chainsync` console script)
if __name__ == "__main__":
    sys.exit(main())
