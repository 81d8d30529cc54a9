"""
Entry point for running donor_sync as a module.

Usage:
    python -m donor_sync --help
    python -m donor_sync auth --account acme
    python -m donor_sync sync --account acme --dry-run
"""

from donor_sync.cli import cli

if __name__ == "__main__":
    cli()
