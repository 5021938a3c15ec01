"""
Shared fixtures: an in-memory ledger and a fake chain observer.
"""

import pytest

from xessrewards.ledger.store import LedgerStore

from fakes import FakeObserver


@pytest.fixture
def store():
    """Empty in-memory ledger with the schema created."""
    ledger = LedgerStore("sqlite://")
    ledger.create_schema()
    yield ledger
    ledger.engine.dispose()


@pytest.fixture
def observer():
    """Fake chain with no accounts or transactions."""
    return FakeObserver()
