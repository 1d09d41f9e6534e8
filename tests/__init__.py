"""
schemavault Test Suite.

This package contains:
- unit/: Unit tests (in-memory and temporary-directory storage)
- integration/: End-to-end flows over a real project directory
"""
