"""
Entity Storage test suite.

This package contains:
- unit/: Unit tests for leaf modules (no external services)
- integration/: Connector contract, service, REST API, SDK and sync engine
  tests (in-memory, file and SQLite backends; Postgres and MongoDB when
  configured through the environment)
"""
