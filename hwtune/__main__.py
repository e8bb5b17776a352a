"""
Entry point for running hwtune as a module.

Usage:
    python -m hwtune network --dry-run
"""

from .cli import main

if __name__ == "__main__":
    main()
