"""
Entry point for running Checkpoint as a module.

Usage:
    python -m checkpoint [command] [options]
"""

from checkpoint.cli import main

if __name__ == "__main__":
    main()
