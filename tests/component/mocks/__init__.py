"""
Component Test Mocks

Shared mock implementations for component testing.
Storage mocks live next to the tests that use them
(tests/component/credit_ledger/conftest.py).
"""

from .nats_mock import MockEventBus

__all__ = [
    'MockEventBus',
]
