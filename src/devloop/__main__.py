"""Main entry point for running devloop as a module.

Usage:
    python -m devloop --help
    python -m devloop run --max-cycles 2
    python -m devloop tasks
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
