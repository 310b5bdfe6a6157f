"""
resource-client test suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Component tests on the in-memory store
- e2e/: End-to-end tests against a MongoDB replica set
"""
