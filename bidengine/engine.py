"""
Bid placement with per-item serialization.

Reading the highest bid and writing a new one are two separate store round
trips, so every placement on an item runs the whole read-validate-write
sequence while holding that item's lock. Locks are `asyncio.Lock` objects
handed out per item id from a weak-value registry: distinct items never
contend, and a lock disappears once no task holds or waits on it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from bidengine.core import (
    BidRequest,
    Clock,
    LockTimeout,
    Reject,
    RejectReason,
    parse_money,
    utcnow,
)
from bidengine.db import Bid, BidStore, ItemStore
from bidengine.metrics import Observer, notify
from bidengine.validator import EmailPolicy, evaluate, highest_bid, is_valid_email

log = logging.getLogger("bidengine.engine")

BidResult = Union[Bid, Reject]


class ItemLocks:
    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, item_id: str) -> asyncio.Lock:
        lock = self._locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[item_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(
        self, item_id: str, timeout: Optional[float]
    ) -> AsyncIterator[asyncio.Lock]:
        lock = self.lock_for(item_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise LockTimeout(item_id, timeout) from None
        try:
            yield lock
        finally:
            lock.release()


class BidPlacementEngine:
    def __init__(
        self,
        items: ItemStore,
        bids: BidStore,
        *,
        clock: Clock = utcnow,
        email_policy: EmailPolicy = is_valid_email,
        lock_timeout: Optional[float] = 5.0,
        observers: Iterable[Observer] = (),
    ):
        self.items = items
        self.bids = bids
        self.clock = clock
        self.email_policy = email_policy
        self.lock_timeout = lock_timeout
        self.observers = list(observers)
        self.locks = ItemLocks()

    async def place_bid(
        self,
        item_id: str,
        bidder_name: str,
        amount: Union[Decimal, int, float, str],
        email: str,
    ) -> BidResult:
        money = parse_money(amount)
        request = BidRequest(
            item_id=item_id,
            bidder_name=bidder_name,
            amount=Decimal("NaN") if money is None else money,
            email=email,
        )
        started = time.perf_counter()
        if money is None:
            log.info("Rejected unusable amount %r from %s on %s", amount, email, item_id)
            outcome = Reject(RejectReason.INVALID_AMOUNT)
            notify(self.observers, "on_bid_decision", request, outcome, 0.0)
            return outcome

        try:
            async with self.locks.hold(item_id, self.lock_timeout):
                outcome = await self._run_locked(request)
        except LockTimeout as exc:
            log.warning("Bid from %s on %s turned away: %s", email, item_id, exc)
            outcome = Reject(RejectReason.LOCK_TIMEOUT)
        except SQLAlchemyError:
            log.exception("Store failure while placing bid on %s", item_id)
            outcome = Reject(RejectReason.STORE_UNAVAILABLE)

        notify(
            self.observers,
            "on_bid_decision",
            request,
            outcome,
            time.perf_counter() - started,
        )
        return outcome

    async def _run_locked(self, request: BidRequest) -> BidResult:
        work = asyncio.ensure_future(
            asyncio.to_thread(self._read_validate_write, request)
        )
        try:
            return await asyncio.shield(work)
        except asyncio.CancelledError:
            # a worker thread cannot be interrupted; keep the item locked
            # until its write has landed or failed
            await asyncio.wait({work})
            raise

    def _read_validate_write(self, request: BidRequest) -> BidResult:
        item = self.items.get(request.item_id)
        highest = own_prior = None
        history: list[Bid] = []
        if item is not None:
            history = self.bids.find_by_item(request.item_id)
            highest = highest_bid(item, (b.amount for b in history))
            own = self.bids.find_by_item_and_email(request.item_id, request.email)
            own_prior = max((b.amount for b in own), default=None)

        now = self.clock()
        decision = evaluate(
            item,
            highest,
            own_prior,
            request,
            now=now,
            email_policy=self.email_policy,
        )
        if isinstance(decision, Reject):
            log.info(
                "Rejected %s from %s on %s: %s",
                request.amount,
                request.email,
                request.item_id,
                decision.reason.value,
            )
            return decision

        created_at = max([now, *(b.created_at for b in history)])
        bid = self.bids.save(
            Bid(
                item_id=request.item_id,
                bidder_name=request.bidder_name,
                amount=request.amount,
                email=request.email,
                created_at=created_at,
            )
        )
        log.info(
            "%s bid %s on %s (previous high %s)",
            request.bidder_name,
            bid.amount,
            request.item_id,
            highest,
        )
        return bid
