"""
BizBook Inventory Core test suite.

This package contains:
- unit/: Unit tests (one component, temp files at most)
- integration/: Integration tests (whole core across every backend, HTTP app)
- fakes.py: DynamoDB client double used by the key-value backend tests
"""
