"""
Shared pytest fixtures for draw engine tests.

Running tests:
    pytest tests/                  - full suite
    pytest tests/ -m "not slow"   - skip the larger end-to-end runs
"""
import pytest
import sys
import os

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from draw_engine.config import get_default_config
from draw_engine.errors import StoreError
from draw_engine.service import TournamentService
from draw_engine.store import MemoryStore


# (uid, name, club points); names sort the same way as the points
PLAYERS = [
    ('u1', 'Alice', 600),
    ('u2', 'Bob', 500),
    ('u3', 'Carol', 400),
    ('u4', 'Dave', 300),
    ('u5', 'Erin', 200),
    ('u6', 'Frank', 100),
]


class FlakyStore(MemoryStore):
    """MemoryStore whose n-th batch_update call fails with StoreError."""

    def __init__(self, fail_on_batch=None, max_batch_size=500):
        super().__init__(max_batch_size)
        self.fail_on_batch = fail_on_batch
        self.batch_calls = 0

    def batch_update(self, writes):
        self.batch_calls += 1
        if self.fail_on_batch and self.batch_calls == self.fail_on_batch:
            raise StoreError("simulated store outage")
        super().batch_update(writes)


def create_tournament(store, tournament_id='t1', club_id='club1', players=PLAYERS, with_points=True,
                      category=None, **fields):
    """Write a club, its users and a tournament roster into the store."""
    if store.get(('clubs',), club_id) is None:
        store.set(('clubs',), club_id, {'name': 'Test Club'})
    store.set(('tournaments',), tournament_id, {'name': 'Spring Open', 'club_id': club_id, **fields})
    existing = len(store.query(('tournaments', tournament_id, 'players')))
    for index, (uid, name, points) in enumerate(players, start=existing + 1):
        if store.get(('users',), uid) is None:
            store.set(('users',), uid, {
                'name': name,
                'clubs': {club_id: {'points': points if with_points else 0}},
                'profile': {'points': 0},
            })
        store.set(('tournaments', tournament_id, 'players'), f'p{index}', {
            'uid': uid,
            'name': name,
            'category': category,
            'is_checked_in': True,
            'payment_status': 'paid',
            'registration_status': 'approved',
        })
    return tournament_id


@pytest.fixture
def config():
    return get_default_config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, config):
    return TournamentService(store, config=config)


@pytest.fixture
def tournament(store):
    """Six ranked players in club tournament t1."""
    return create_tournament(store)


@pytest.fixture
def tournament_store():
    """FlakyStore holding tournament t1; pass fail_on_batch to choose the failing batch."""
    def make(**kwargs):
        store = FlakyStore(**kwargs)
        return store, create_tournament(store)
    return make


@pytest.fixture
def client(store):
    """Flask test client backed by the in-memory store."""
    from app import app
    app.config['TESTING'] = True
    app.config['STORE'] = store
    with app.test_client() as client:
        yield client
    app.config.pop('STORE', None)
