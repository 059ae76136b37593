"""Shared fixtures: isolated home directory, migrated temp database, fixed clock."""

import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Keep data/, logs/ and backups/ of the test run out of the project tree
os.environ.setdefault("CRAFTLOCAL_FRAUD_HOME", tempfile.mkdtemp(prefix="craftlocal_fraud_home_"))

sys.path.insert(0, str(Path(__file__).parent.parent))

from craftlocal_fraud.db import initialize_database
from craftlocal_fraud.domain.models import Order, to_iso
from craftlocal_fraud.repositories import OrdersRepository


NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_db():
    """Path of a fresh database file in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    db_path = Path(temp_dir) / "test.db"

    yield db_path

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def conn(temp_db):
    """Connection to a fully migrated database."""
    connection = initialize_database(temp_db)
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def add_order(conn, clock):
    """Insert an order for a buyer, placed *minutes_ago* before the clock."""
    repo = OrdersRepository(conn)

    def _add(buyer_id, amount, seller_id="seller-1", minutes_ago=10, status=None):
        order = Order(
            id="",
            buyer_id=buyer_id,
            seller_id=seller_id,
            total_amount=amount,
            created_at=to_iso(clock() - timedelta(minutes=minutes_ago)),
        )
        if status is not None:
            order.status = status
        return repo.create(order)

    return _add
