"""mutabledht CLI entry point.

``python -m mutabledht`` and the ``mutabledht`` console script both
resolve here.
"""

from __future__ import annotations

from mutabledht.cli import cli


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
