"""CLI entry point.

Allows running the CLI as a module: python -m photojury.cli
"""

from photojury.cli import app

if __name__ == "__main__":
    app()
