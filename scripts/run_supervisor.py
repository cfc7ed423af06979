#!/usr/bin/env python3
"""
Entry point for the supervisor process.

Usage:
    python scripts/run_supervisor.py

    # Explicit child command
    python scripts/run_supervisor.py -- python -m nodekeeper.worker

    # Or in background:
    nohup python scripts/run_supervisor.py > logs/supervisor.out 2>&1 &

The supervisor keeps the worker alive:
- Restarts it after a crash (fixed delay)
- Pauses for the rest of the window after too many restarts
- Forwards SIGINT/SIGTERM and exits 0
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from nodewatch.cli import main

if __name__ == "__main__":
    sys.exit(main())
