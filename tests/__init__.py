"""
FieldVault Test Suite.

This package contains:
- unit/: Unit tests (in-memory and SQLite backends, no network)
- integration/: Integration tests (full runtime on SQLite, HTTP console)
"""
