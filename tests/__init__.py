"""
dcp.mdstore Test Suite.

This package contains:
- unit/: Unit tests (value objects, rules, and single components over a
  temporary SQLite file)
- integration/: Integration tests (full store scenarios)
"""
