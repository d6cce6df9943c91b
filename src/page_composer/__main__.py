"""
Module entrypoint: `python -m page_composer` runs the CLI in cli.py.
"""

from .cli import main


if __name__ == "__main__":
    raise SystemExit(main())
