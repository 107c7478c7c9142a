# main.py
"""CLI entry point for StoryLoom."""

from __future__ import annotations

import sys

from orchestration.cli_runner import run


def main() -> None:
    """Run the ``storyloom`` command line."""
    sys.exit(run())


if __name__ == "__main__":
    main()
