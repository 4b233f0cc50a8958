"""Main entry point for python -m spanorm."""

from .cli import cli

if __name__ == "__main__":
    cli()
