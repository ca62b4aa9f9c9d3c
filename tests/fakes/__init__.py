"""Shared Fake adapters for testing without unittest.mock.

All Fake implementations follow the Port DI adapter pattern:
real Python classes with preset return values, no AsyncMock/MagicMock.
"""

from tests.fakes.session import (
    FakeAsyncSession,
    FakeResult,
    FakeScalarsResult,
    FakeSessionFactory,
)
from tests.fakes.store import FlakyStore, InterleavingStore, UnavailableStore

__all__ = [
    "FakeAsyncSession",
    "FakeResult",
    "FakeScalarsResult",
    "FakeSessionFactory",
    "FlakyStore",
    "InterleavingStore",
    "UnavailableStore",
]
