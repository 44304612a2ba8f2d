"""
Integration Test Layer Configuration (Layer 2)

Runs the ledger against a real PostgreSQL. Connection settings come from
the usual POSTGRES_* environment variables; tests skip when the database
cannot be reached.

Usage:
    POSTGRES_HOST=localhost pytest tests/integration -v
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

# Integration runs never publish to a real bus
os.environ.setdefault("NATS_ENABLED", "false")


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
