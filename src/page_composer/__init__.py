"""
page-composer package.

Why this file exists:
- It marks this folder as a package so `python -m page_composer` works.
- Import side effects stay minimal; the engine lives in the submodules and
  the CLI in cli.py.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
