#!/usr/bin/env python3
"""
Run the connection worker directly, without a supervisor.

Usage:
    python scripts/run_worker.py --config config/settings.yaml
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from nodekeeper.worker import main

if __name__ == "__main__":
    sys.exit(main())
