from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.engine import Engine

from bidengine.core import Category, Clock, as_naive_utc, parse_money, utcnow
from bidengine.db import Bid, BidStore, Item, ItemStore, make_engine
from bidengine.engine import BidPlacementEngine, BidResult
from bidengine.metrics import BidMetrics, notify
from bidengine.settings import Settings
from bidengine.sweeper import ExpirationSweeper
from bidengine.validator import EmailPolicy, is_valid_email


@dataclass
class Backend:
    """Everything the API and CLI need, wired to one database."""

    items: ItemStore
    bids: BidStore
    engine: BidPlacementEngine
    sweeper: ExpirationSweeper
    metrics: BidMetrics
    clock: Clock = utcnow
    email_policy: EmailPolicy = is_valid_email

    async def place_bid(
        self,
        item_id: str,
        bidder_name: str,
        amount: Union[Decimal, int, float, str],
        email: str,
    ) -> BidResult:
        return await self.engine.place_bid(item_id, bidder_name, amount, email)

    def sweep_expired_items(self, now: Optional[datetime] = None) -> int:
        return self.sweeper.sweep(now)

    # ---- item helpers for the outer surfaces ------------------------------

    def create_item(
        self,
        name: str,
        initial_price: Union[Decimal, int, float, str],
        end_time: datetime,
        creator: str,
        description: str = "",
        category: Category = Category.OTHER,
    ) -> Item:
        """Validate and store a new listing; raises ValueError on bad input."""
        price = _require_price(initial_price)
        end_time = as_naive_utc(end_time)
        if not self.email_policy(creator):
            raise ValueError("Invalid email format for creator")
        if end_time <= self.clock():
            raise ValueError("End time must be in the future")
        item = self.items.put(
            Item(
                name=name,
                description=description,
                initial_price=price,
                end_time=end_time,
                creator=creator,
                category=category,
                active=True,
            )
        )
        self._refresh_active_gauge()
        return item

    def update_item(
        self,
        item_id: str,
        *,
        name: str,
        initial_price: Union[Decimal, int, float, str],
        end_time: datetime,
        creator: str,
        active: bool = True,
        description: str = "",
        category: Category = Category.OTHER,
    ) -> Item:
        """Replace an item's fields.

        Raises NotFoundError for an unknown id and ValueError on bad input.
        An inactive item may keep an end time in the past.
        """
        item = self.items.require(item_id)
        price = _require_price(initial_price)
        end_time = as_naive_utc(end_time)
        if not self.email_policy(creator):
            raise ValueError("Invalid email format for creator")
        if active and end_time <= self.clock():
            raise ValueError("End time must be in the future for active items")
        item.name = name
        item.description = description
        item.initial_price = price
        item.end_time = end_time
        item.creator = creator
        item.category = category
        item.active = active
        item = self.items.put(item)
        self._refresh_active_gauge()
        return item

    def delete_item(self, item_id: str) -> None:
        self.items.delete(item_id)
        self._refresh_active_gauge()

    def active_items(self) -> list[Item]:
        active = self.items.list_active()
        notify([self.metrics], "on_active_auctions", len(active))
        return active

    def _refresh_active_gauge(self) -> None:
        self.active_items()

    def highest_for(self, item: Item) -> tuple[Decimal, Optional[Bid]]:
        bids = self.bids.find_by_item(item.id)
        if not bids:
            return item.initial_price, None
        return bids[0].amount, bids[0]


def _require_price(value) -> Decimal:
    price = parse_money(value)
    if price is None:
        raise ValueError(
            "Initial price must be a positive amount with at most two decimal places"
        )
    return price


def build_backend(
    settings: Settings,
    *,
    db_engine: Optional[Engine] = None,
    clock: Clock = utcnow,
    email_policy: EmailPolicy = is_valid_email,
) -> Backend:
    if db_engine is None:
        db_engine = make_engine(settings.database.url, echo=settings.database.echo)
    items = ItemStore(db_engine)
    bids = BidStore(db_engine)
    metrics = BidMetrics()
    engine = BidPlacementEngine(
        items,
        bids,
        clock=clock,
        email_policy=email_policy,
        lock_timeout=settings.bidding.lock_timeout_seconds,
        observers=[metrics],
    )
    sweeper = ExpirationSweeper(items, clock=clock, observers=[metrics])
    return Backend(
        items=items,
        bids=bids,
        engine=engine,
        sweeper=sweeper,
        metrics=metrics,
        clock=clock,
        email_policy=email_policy,
    )
