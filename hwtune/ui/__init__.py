"""
UI module - Rich console output.

Provides:
- One-line effect statuses, dry-run lines and report blocks
- Dangerous-flag confirmation prompts
- Apply, drift and cleanup summaries
- Logging setup
"""

from .console import ConsoleUI
from .log import setup_logging

__all__ = [
    "ConsoleUI",
    "setup_logging",
]
