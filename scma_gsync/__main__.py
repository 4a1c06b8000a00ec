"""
Entry point for running scma_gsync as a module.

Usage:
    python -m scma_gsync --help
    python -m scma_gsync auth --secret-file secret.json --token-file token.json
    python -m scma_gsync events --input file --input-file roster.yml --dry-run
"""

from scma_gsync.cli import cli

if __name__ == "__main__":
    cli()
