"""
Shared test fixtures for dcp.mdstore.

Every store lives in its own temporary directory and is closed after the
test. The user directory knows three users:
- alice (7) and bob (8), both holding privilege 3
- carol (9), holding no privileges
"""

import tempfile
from pathlib import Path

import pytest

from dcp.mdstore import InMemoryUserDirectory, MetadataStore, User
from dcp.mdstore.storage.database import MetadataDatabase

PRIV_RESOURCE_ADMIN = 3

ALICE = User(user_id=7, name="alice", email="alice@example.org", privileges=frozenset({PRIV_RESOURCE_ADMIN, 99}))
BOB = User(user_id=8, name="bob", email="bob@example.org", privileges=frozenset({PRIV_RESOURCE_ADMIN, 50}))
CAROL = User(user_id=9, name="carol", email="carol@example.org")


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db(data_dir):
    """Initialized database without a store on top."""
    database = MetadataDatabase(Path(data_dir) / "metadata.db", wal_mode=False)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(data_dir):
    """Initialized metadata store with the test users."""
    md = MetadataStore(
        MetadataDatabase(Path(data_dir) / "metadata.db", wal_mode=False),
        users=InMemoryUserDirectory([ALICE, BOB, CAROL]),
    )
    md.initialize()
    yield md
    md.close()


@pytest.fixture
def alice():
    return ALICE


@pytest.fixture
def bob():
    return BOB


@pytest.fixture
def carol():
    return CAROL
