"""CLI entry point for ctlbridge.

Usage:
    python -m ctlbridge serve --driver tmux

    # For testing with a file:
    cat requests.jsonl | python -m ctlbridge serve
"""

import sys


def main() -> int:
    """Main entry point for the ctlbridge CLI."""
    from ctlbridge.cli import run_cli

    return run_cli(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
