"""Entry point for `python -m clawgate`."""

from clawgate.cli.commands import app

if __name__ == "__main__":
    app()
