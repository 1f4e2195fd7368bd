"""
Orchestrator Package - Service Coordination Layer.

============================================================
PACKAGE OVERVIEW
============================================================
Wires every stage together and owns the process lifecycle.
It holds no detection or filtering logic of its own.

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |                  IngestionService                   |
    |-----------------------------------------------------|
    |  NetworkRuntime  | connector + block source + task  |
    |  NetworkPipeline | ingest -> filter -> risk ->      |
    |                  | stats -> publish, per block      |
    |  CLI             | argparse entry point             |
    +-----------------------------------------------------+

============================================================
USAGE
============================================================
    python app.py --config config.yaml
    python -m orchestrator.cli --config config.yaml --dry-run

============================================================
"""

from .pipeline import BlockOutcome, NetworkPipeline
from .core import IngestionService, NetworkRuntime, setup_logging

__all__ = [
    "BlockOutcome",
    "NetworkPipeline",
    "IngestionService",
    "NetworkRuntime",
    "setup_logging",
]
