import logging
from datetime import datetime
from typing import Iterable, Optional

from bidengine.core import Clock, utcnow
from bidengine.db import ItemStore
from bidengine.metrics import Observer, notify

log = logging.getLogger("bidengine.sweeper")


class ExpirationSweeper:
    """Deactivates active items whose end time has passed."""

    def __init__(
        self,
        items: ItemStore,
        *,
        clock: Clock = utcnow,
        observers: Iterable[Observer] = (),
    ):
        self.items = items
        self.clock = clock
        self.observers = list(observers)

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        active = self.items.list_active()
        deactivated = 0
        for item in active:
            if item.end_time < now and self.items.deactivate(item.id):
                deactivated += 1
                log.info("Deactivated %s (%s), ended %s", item.id, item.name, item.end_time)
        if deactivated:
            log.info("Sweep deactivated %d of %d active items", deactivated, len(active))
        notify(self.observers, "on_sweep", deactivated, len(active) - deactivated)
        return deactivated
