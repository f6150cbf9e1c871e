"""
Version ledger for FieldVault.

Bounded, append-only list of version records. Each record keeps the full
snapshot in force after its change so any retained version can be
restored.
"""

from .ledger import VersionLedger, VersionListener

__all__ = ["VersionLedger", "VersionListener"]
