"""CLI entry point for pixcraft.cli module.

Enables execution via: python -m pixcraft.cli
"""

from pixcraft.cli.recover_generations import main

if __name__ == "__main__":
    raise SystemExit(main())
