"""
Shared fixtures: an in-memory store, a controllable clock and a small catalog.
"""
from datetime import datetime, timedelta, timezone

import pytest

from edurewards.catalog import TaskCatalog
from edurewards.models import SourceRef
from edurewards.service import build_services, use_services
from edurewards.store import MemoryStore

CATALOG = [
    {
        'id': 'electrical-safety',
        'title': 'Check home electrical safety',
        'category': 'village',
        'proof_policy': 'photo',
        'reward': {'coins': 50, 'xp': 120},
    },
    {
        'id': 'water-conservation',
        'title': 'Help with water conservation',
        'category': 'village',
        'proof_policy': 'photo',
        'reward': {'coins': 60, 'xp': 150},
        'prerequisites': ['electrical-safety'],
    },
    {
        'id': 'physics-quiz',
        'title': 'Physics Chapter 5 Quiz',
        'category': 'subject',
        'proof_policy': 'auto',
        'reward': {'coins': 30, 'xp': 80},
    },
    {
        'id': 'forces-essay',
        'title': 'Write what you learned about forces',
        'category': 'subject',
        'proof_policy': 'text',
        'reward': {'coins': 20, 'xp': 50},
    },
    {
        'id': 'morning-reading',
        'title': 'Read for 20 minutes',
        'category': 'personal',
        'proof_policy': 'none',
        'reward': {'coins': 10, 'xp': 25},
    },
    {
        'id': 'family-chat',
        'title': 'Talk with your family about your day',
        'category': 'family',
        'proof_policy': 'none',
        'reward': {'coins': 0, 'xp': 10},
    },
]


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def catalog():
    return TaskCatalog.from_dicts(CATALOG)


@pytest.fixture
def services(store, clock, catalog):
    services = build_services(store=store, clock=clock, catalog=catalog)
    use_services(services)
    yield services
    use_services(None)


@pytest.fixture
def fund(services):
    """Credit coins straight to a wallet."""
    def _fund(user_id, coins, grant='seed'):
        return services.ledger.credit(user_id, coins, SourceRef('grant', f"{grant}-{user_id}"), 'Test grant')
    return _fund
