"""
Dashboard Package.

Read-only status API (FastAPI) served next to the pipeline.

Modules:
- api: application factory
- routers/: health, status, networks, metrics
- schemas: response envelopes
"""

from .api import create_app

__all__ = ["create_app"]
