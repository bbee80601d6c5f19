#!/usr/bin/env python3
"""
Roster Sync Tool entry point for running from a checkout.

Usage:
    ./scripts/sync_directory.py sync --config config.yaml --dry-run
"""

import sys
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rostersync.cli import main

if __name__ == "__main__":
    sys.exit(main())
