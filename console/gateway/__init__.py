"""
FieldVault HTTP console - operator REST API over the durability core.

This console exposes:
1. Backup, restore and validation of the current snapshot
2. Version history and revert
3. Sync state, the offline queue and the schedule
"""

from .app import create_app
from .routes import router

__all__ = ["create_app", "router"]
