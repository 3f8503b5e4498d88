"""chatdelta CLI module entry point.

Enables running the CLI via: python -m chatdelta.cli
"""

from chatdelta.cli.main import cli

if __name__ == "__main__":
    cli()
