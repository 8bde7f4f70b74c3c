from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from bidengine.core import Category
from bidengine.db import BidStore, Item, ItemStore, make_engine
from bidengine.service import build_backend
from bidengine.settings import Settings

NOW = datetime(2026, 1, 15, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'bids.sqlite'}")
    yield engine
    engine.dispose()


@pytest.fixture
def items(db_engine):
    return ItemStore(db_engine)


@pytest.fixture
def bids(db_engine):
    return BidStore(db_engine)


@pytest.fixture
def backend(db_engine, clock):
    return build_backend(Settings(), db_engine=db_engine, clock=clock)


@pytest.fixture
def make_item(items):
    def _make(**overrides) -> Item:
        fields = dict(
            name="Vintage Camera",
            description="Leica M3, 1958",
            initial_price=Decimal("100.00"),
            end_time=NOW + timedelta(hours=1),
            active=True,
            creator="seller@example.com",
            category=Category.ELECTRONICS,
        )
        fields.update(overrides)
        return items.put(Item(**fields))

    return _make
