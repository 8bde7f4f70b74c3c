import asyncio
import random
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from bidengine.core import ErrorKind, Reject, RejectReason
from bidengine.db import Bid, BidStore
from bidengine.engine import BidPlacementEngine
from bidengine.metrics import BidMetrics

from conftest import NOW


def _place(engine, item_id, amount, email="bob@example.com", name="Bob"):
    return asyncio.run(engine.place_bid(item_id, name, amount, email))


def _engine(items, bids, clock, **kwargs):
    return BidPlacementEngine(items, bids, clock=clock, **kwargs)


def _highest(bids, item):
    rows = bids.find_by_item(item.id)
    return rows[0].amount if rows else item.initial_price


def test_bid_sequence_scenario(items, bids, clock, make_item):
    item = make_item(initial_price=Decimal("100.0"))
    engine = _engine(items, bids, clock)

    first = _place(engine, item.id, Decimal("100.0"))
    assert isinstance(first, Reject) and first.reason is RejectReason.BID_TOO_LOW
    assert _highest(bids, item) == Decimal("100.0")

    accepted = _place(engine, item.id, Decimal("120.0"))
    assert isinstance(accepted, Bid)
    assert accepted.amount == Decimal("120.0")
    assert accepted.created_at == NOW
    assert _highest(bids, item) == Decimal("120.0")

    tie = _place(engine, item.id, Decimal("120.0"), email="ann@example.com", name="Ann")
    assert isinstance(tie, Reject) and tie.reason is RejectReason.BID_TOO_LOW

    third = _place(engine, item.id, Decimal("150.0"), email="cat@example.com", name="Cat")
    assert isinstance(third, Bid)
    assert _highest(bids, item) == Decimal("150.0")
    assert [b.amount for b in bids.find_by_item(item.id)] == [150, 120]


def test_missing_item_never_writes(items, bids, clock):
    engine = _engine(items, bids, clock)
    outcome = _place(engine, "no-such-item", 500)
    assert outcome.reason is RejectReason.ITEM_NOT_FOUND
    assert outcome.kind is ErrorKind.NOT_FOUND
    assert bids.list_all() == []


def test_inactive_and_expired_items(items, bids, clock, make_item):
    closed = make_item(active=False)
    expired = make_item(end_time=NOW - timedelta(minutes=5))
    engine = _engine(items, bids, clock)

    for amount in (50, 150, 99_999):
        assert _place(engine, closed.id, amount).reason is RejectReason.ITEM_NOT_ACTIVE
        assert _place(engine, expired.id, amount).reason is RejectReason.ITEM_EXPIRED
    assert bids.list_all() == []


def test_invalid_email_rejected(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock)
    outcome = _place(engine, item.id, 150, email="invalid-email")
    assert outcome.reason is RejectReason.INVALID_EMAIL
    assert outcome.kind is ErrorKind.VALIDATION
    assert bids.list_all() == []


def test_item_state_is_reread_on_every_placement(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock)
    assert isinstance(_place(engine, item.id, 110), Bid)

    item.active = False
    items.put(item)
    assert _place(engine, item.id, 130).reason is RejectReason.ITEM_NOT_ACTIVE

    clock.advance(hours=2)
    item.active = True
    items.put(item)
    assert _place(engine, item.id, 140).reason is RejectReason.ITEM_EXPIRED


def test_created_at_never_goes_backwards(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock)
    first = _place(engine, item.id, 110)
    clock.now = NOW - timedelta(seconds=30)
    second = _place(engine, item.id, 120, email="ann@example.com")
    assert second.created_at == first.created_at
    assert first.id != second.id


class SlowBidStore(BidStore):
    """Widens the read/write window and records the order of writes."""

    def __init__(self, engine):
        super().__init__(engine)
        self.saved: list[Decimal] = []

    def find_by_item(self, item_id):
        rows = super().find_by_item(item_id)
        time.sleep(0.01)
        return rows

    def save(self, bid):
        row = super().save(bid)
        self.saved.append(row.amount)
        return row


def test_concurrent_bids_keep_the_chain_monotonic(items, db_engine, clock, make_item):
    item = make_item(initial_price=Decimal("100"))
    store = SlowBidStore(db_engine)
    engine = _engine(items, store, clock, lock_timeout=30)

    amounts = [Decimal(100 + n) for n in range(1, 21)]
    random.Random(7).shuffle(amounts)

    async def scenario():
        return await asyncio.gather(
            *(
                engine.place_bid(item.id, f"bidder{i}", amount, f"bidder{i}@example.com")
                for i, amount in enumerate(amounts)
            )
        )

    outcomes = asyncio.run(scenario())
    accepted = [o for o in outcomes if isinstance(o, Bid)]
    rejected = [o for o in outcomes if isinstance(o, Reject)]

    assert len(accepted) == len(store.saved)
    assert all(b > a for a, b in zip(store.saved, store.saved[1:]))
    assert store.saved[0] > item.initial_price
    assert max(store.saved) == Decimal("120")
    assert {r.reason for r in rejected} <= {RejectReason.BID_TOO_LOW}


def test_lock_timeout_is_retryable(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock, lock_timeout=0.05)

    async def scenario():
        async with engine.locks.hold(item.id, None):
            return await engine.place_bid(item.id, "Bob", 150, "bob@example.com")

    outcome = asyncio.run(scenario())
    assert outcome.reason is RejectReason.LOCK_TIMEOUT
    assert outcome.kind is ErrorKind.CONTENTION
    assert outcome.retryable
    assert bids.list_all() == []


def test_distinct_items_do_not_contend(items, bids, clock, make_item):
    busy = make_item(name="Busy")
    free = make_item(name="Free")
    engine = _engine(items, bids, clock, lock_timeout=0.05)

    async def scenario():
        async with engine.locks.hold(busy.id, None):
            return await engine.place_bid(free.id, "Bob", 150, "bob@example.com")

    assert isinstance(asyncio.run(scenario()), Bid)


def test_lock_released_after_rejection(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock, lock_timeout=0.05)

    async def scenario():
        rejected = await engine.place_bid(item.id, "Bob", 50, "bob@example.com")
        accepted = await engine.place_bid(item.id, "Bob", 150, "bob@example.com")
        return rejected, accepted, engine.locks.lock_for(item.id).locked()

    rejected, accepted, still_locked = asyncio.run(scenario())
    assert rejected.reason is RejectReason.BID_TOO_LOW
    assert isinstance(accepted, Bid)
    assert not still_locked


class BrokenBidStore(BidStore):
    def save(self, bid):
        raise OperationalError("INSERT INTO bid", {}, Exception("disk I/O error"))


def test_store_failure_becomes_typed_reject(items, db_engine, clock, make_item):
    item = make_item()
    engine = _engine(items, BrokenBidStore(db_engine), clock, lock_timeout=0.05)

    outcome = _place(engine, item.id, 150)
    assert outcome.reason is RejectReason.STORE_UNAVAILABLE
    assert outcome.retryable
    assert BidStore(db_engine).list_all() == []

    again = _place(engine, item.id, 160)
    assert again.reason is RejectReason.STORE_UNAVAILABLE


def test_observers_see_decisions_but_cannot_change_them(items, bids, clock, make_item):
    class Exploding:
        def on_bid_decision(self, request, outcome, elapsed):
            raise RuntimeError("metrics backend down")

    metrics = BidMetrics()
    item = make_item()
    engine = _engine(items, bids, clock, observers=[Exploding(), metrics])

    assert isinstance(_place(engine, item.id, 150), Bid)
    assert _place(engine, item.id, 140).reason is RejectReason.BID_TOO_LOW

    snap = metrics.snapshot()
    assert snap["successful_bids"] == 1
    assert snap["failed_bids"] == 1
    assert snap["failure_reasons"] == {"bid_too_low": 1}


def test_sub_cent_amounts_are_rejected_before_any_write(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock)

    first = _place(engine, item.id, Decimal("120.004"))
    assert first.reason is RejectReason.INVALID_AMOUNT
    second = _place(engine, item.id, "120.003", email="ann@example.com", name="Ann")
    assert second.reason is RejectReason.INVALID_AMOUNT
    assert bids.find_by_item(item.id) == []

    trailing_zeros = _place(engine, item.id, "120.000")
    assert isinstance(trailing_zeros, Bid)
    assert trailing_zeros.amount == Decimal("120.00")
    assert bids.find_by_item(item.id)[0].amount == Decimal("120.00")


@pytest.mark.parametrize(
    "amount",
    ["NaN", "sNaN", "Infinity", "-Infinity", Decimal("NaN"), 0, "-5", "lots", ""],
)
def test_unusable_amounts_are_validation_rejects(items, bids, clock, make_item, amount):
    metrics = BidMetrics()
    item = make_item()
    engine = _engine(items, bids, clock, observers=[metrics])

    outcome = _place(engine, item.id, amount)
    assert outcome.reason is RejectReason.INVALID_AMOUNT
    assert outcome.kind is ErrorKind.VALIDATION
    assert not outcome.retryable
    assert bids.list_all() == []
    assert metrics.snapshot()["failure_reasons"] == {"invalid_amount": 1}

    # the item is still open to normal bids
    assert isinstance(_place(engine, item.id, 150), Bid)


def test_amount_beyond_column_range_is_rejected(items, bids, clock, make_item):
    item = make_item()
    engine = _engine(items, bids, clock)
    outcome = _place(engine, item.id, Decimal("1e12"))
    assert outcome.reason is RejectReason.INVALID_AMOUNT
    assert bids.list_all() == []


class LaggingBidStore(BidStore):
    """Item history that misses recent writes; per-bidder lookups stay current."""

    def find_by_item(self, item_id):
        return []


def test_own_prior_bid_is_enforced_by_the_engine(items, db_engine, clock, make_item):
    item = make_item()
    store = LaggingBidStore(db_engine)
    store.save(
        Bid(
            item_id=item.id,
            bidder_name="Bob",
            amount=Decimal("200.00"),
            email="bob@example.com",
            created_at=NOW,
        )
    )
    engine = _engine(items, store, clock)

    outcome = _place(engine, item.id, Decimal("150.00"))
    assert outcome.reason is RejectReason.BID_NOT_HIGHER_THAN_OWN_PRIOR
    assert outcome.kind is ErrorKind.VALIDATION
    assert len(store.find_by_item_and_email(item.id, "bob@example.com")) == 1

    other = _place(engine, item.id, Decimal("150.00"), email="ann@example.com", name="Ann")
    assert isinstance(other, Bid)
