"""
Integration tests for liveshift.

These tests run complete migrations over in-memory databases, with SQLite
for the durable staging scenario.

Run integration tests:
    pytest tests/integration/ -v

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
