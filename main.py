#!/usr/bin/env python3
"""
REPOSCOUT - Repository Discovery and Analysis Scheduler

Main entry point when running from a source checkout.

Usage:
    python main.py discover
    python main.py schedule
    python main.py batch start tier1 --chunk-size 20
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from reposcout.cli import cli


if __name__ == '__main__':
    cli()
