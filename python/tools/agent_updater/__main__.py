"""
Command line entry point for Agent Updater.
This allows running the module as: python -m agent_updater
"""

from .cli import main
import sys

if __name__ == "__main__":
    sys.exit(main())
