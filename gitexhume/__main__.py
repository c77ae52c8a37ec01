"""Entry point for running gitexhume as a module.

This module allows gitexhume to be run as a Python module using the -m flag:
    python -m gitexhume
"""

from . import cli

if __name__ == "__main__":
    cli._main()
