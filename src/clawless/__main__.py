"""Clawless CLI entry point."""

from clawless.cli import app

if __name__ == "__main__":
    app()
