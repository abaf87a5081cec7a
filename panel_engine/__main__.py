"""Entry point for running panel_engine as a module.

Usage:
    python -m panel_engine <command> [options]
"""
from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
