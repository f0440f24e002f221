"""
pg-pitr Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (local filesystem archive, full archive/restore flow)
"""
