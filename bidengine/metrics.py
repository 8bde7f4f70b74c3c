from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import TYPE_CHECKING, Iterable, Protocol, Union

from bidengine.core import BidRequest, Reject

if TYPE_CHECKING:
    from bidengine.db import Bid

log = logging.getLogger("bidengine.metrics")


class Observer(Protocol):
    """Side channel told about every decision; it never changes one."""

    def on_bid_decision(
        self, request: BidRequest, outcome: Union[Bid, Reject], elapsed: float
    ) -> None: ...

    def on_sweep(self, deactivated: int, still_active: int) -> None: ...

    def on_active_auctions(self, count: int) -> None: ...


class BidMetrics:
    """In-process counters for bid placement and sweeps."""

    def __init__(self):
        self._lock = threading.Lock()
        self.successful_bids = 0
        self.failed_bids = 0
        self.failure_reasons: Counter[str] = Counter()
        self.placement_seconds_total = 0.0
        self.placement_seconds_max = 0.0
        self.active_auctions: int | None = None
        self.sweeps = 0

    def on_bid_decision(self, request, outcome, elapsed: float) -> None:
        with self._lock:
            if isinstance(outcome, Reject):
                self.failed_bids += 1
                self.failure_reasons[outcome.reason.value] += 1
            else:
                self.successful_bids += 1
            self.placement_seconds_total += elapsed
            self.placement_seconds_max = max(self.placement_seconds_max, elapsed)

    def on_sweep(self, deactivated: int, still_active: int) -> None:
        with self._lock:
            self.sweeps += 1
            self.active_auctions = still_active

    def on_active_auctions(self, count: int) -> None:
        with self._lock:
            self.active_auctions = count

    def snapshot(self) -> dict:
        with self._lock:
            placed = self.successful_bids + self.failed_bids
            return {
                "successful_bids": self.successful_bids,
                "failed_bids": self.failed_bids,
                "failure_reasons": dict(self.failure_reasons),
                "placement_seconds_avg": (
                    self.placement_seconds_total / placed if placed else 0.0
                ),
                "placement_seconds_max": self.placement_seconds_max,
                "active_auctions": self.active_auctions,
                "sweeps": self.sweeps,
            }


def notify(observers: Iterable[Observer], hook: str, *args) -> None:
    for obs in observers:
        try:
            getattr(obs, hook)(*args)
        except Exception:
            log.exception("observer %r failed in %s", obs, hook)
