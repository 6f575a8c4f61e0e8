"""
Entry point for running snapkeep as a module.

Usage:
    python -m snapkeep [command] [options]
"""

from snapkeep.cli import main

if __name__ == "__main__":
    main()
