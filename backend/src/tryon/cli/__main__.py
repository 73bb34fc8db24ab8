"""CLI entry point for tryon.cli module.

Enables execution via: python -m tryon.cli <command>
"""

from tryon.cli.maintenance import main

if __name__ == "__main__":
    main()
