#!/usr/bin/env python3
"""
Chain Ingestion - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
The one executable entry point of the service.

- Loads configuration, then runs every enabled network
- Serves the status API in the same process
- SIGINT / SIGTERM trigger a graceful, bounded shutdown

============================================================
USAGE
============================================================
Direct execution:
    python app.py --config config.yaml

Dry run (in-memory store and transport):
    python app.py --config config.yaml --dry-run

With PM2:
    pm2 start app.py --interpreter python --name chain-ingestion -- --config config.yaml

============================================================
"""

import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
