#!/usr/bin/env python3
"""
deferq CLI entry point.

Allows running: python -m deferq <command>
"""

from deferq.cli import main

if __name__ == "__main__":
    main()
