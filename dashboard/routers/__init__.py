"""
Status API Routers.
"""
from . import admin, health, metrics, networks, status

__all__ = ["admin", "health", "metrics", "networks", "status"]
