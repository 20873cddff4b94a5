"""Entry point for running projectd.

Usage:
    python -m projectd run --config ~/projectd.yaml --work-file work.yaml
    python -m projectd check-config --config ~/projectd.yaml
"""

import sys

from projectd.cli import run_cli


def main() -> None:
    sys.exit(run_cli(sys.argv[1:]))


if __name__ == "__main__":
    main()
