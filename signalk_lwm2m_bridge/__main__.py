import sys

from .bridge import cli

if __name__ == "__main__":
    sys.exit(cli())
