# bidengine/db.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlmodel import SQLModel, Field, create_engine, Session, select, col
from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from bidengine.core import Category, NotFoundError, utcnow

# TODO(migrations): add Alembic before the item/bid schema changes in place;
# create_all only creates missing tables.


def _new_id() -> str:
    return uuid.uuid4().hex


class Item(SQLModel, table=True):
    __tablename__ = "item"
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    initial_price: Decimal = Field(max_digits=12, decimal_places=2)
    end_time: datetime = Field(index=True, description="Auction deadline (UTC)")
    active: bool = Field(default=True, index=True)
    creator: str = Field(description="Seller email")
    category: Category = Field(default=Category.OTHER)


# item_id carries no foreign key: bids outlive a deleted item.
class Bid(SQLModel, table=True):
    __tablename__ = "bid"
    id: str = Field(default_factory=_new_id, primary_key=True)
    item_id: str = Field(index=True)
    bidder_name: str = Field(index=True)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    email: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)


def make_engine(url: str, echo: bool = False) -> Engine:
    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        # sessions are opened from worker threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    SQLModel.metadata.create_all(engine)
    return engine


class ItemStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, item_id: str) -> Optional[Item]:
        with Session(self.engine) as s:
            return s.get(Item, item_id)

    def require(self, item_id: str) -> Item:
        item = self.get(item_id)
        if item is None:
            raise NotFoundError("item", item_id)
        return item

    def put(self, item: Item) -> Item:
        with Session(self.engine) as s:
            row = s.merge(item)
            s.commit()
            s.refresh(row)
            return row

    def deactivate(self, item_id: str) -> bool:
        """Flip `active` off in place; False if the row is gone or already off."""
        stmt = (
            update(Item)
            .where(Item.id == item_id, Item.active == True)  # noqa: E712
            .values(active=False)
        )
        with Session(self.engine) as s:
            changed = s.connection().execute(stmt).rowcount
            s.commit()
            return changed == 1

    def list_active(self) -> List[Item]:
        with Session(self.engine) as s:
            stmt = select(Item).where(Item.active == True)  # noqa: E712
            return list(s.exec(stmt.order_by(Item.end_time)).all())

    def list_all(self) -> List[Item]:
        with Session(self.engine) as s:
            return list(s.exec(select(Item).order_by(Item.end_time)).all())

    def search(self, name: str) -> List[Item]:
        with Session(self.engine) as s:
            stmt = select(Item).where(
                func.lower(Item.name).contains(name.lower())
            )
            return list(s.exec(stmt.order_by(Item.name)).all())

    def delete(self, item_id: str) -> None:
        """Remove the item only; its bids are left in place."""
        with Session(self.engine) as s:
            row = s.get(Item, item_id)
            if row is None:
                raise NotFoundError("item", item_id)
            s.delete(row)
            s.commit()


class BidStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def save(self, bid: Bid) -> Bid:
        with Session(self.engine) as s:
            s.add(bid)
            s.commit()
            s.refresh(bid)
            return bid

    def get(self, bid_id: str) -> Bid:
        with Session(self.engine) as s:
            row = s.get(Bid, bid_id)
            if row is None:
                raise NotFoundError("bid", bid_id)
            return row

    def delete(self, bid_id: str) -> None:
        with Session(self.engine) as s:
            row = s.get(Bid, bid_id)
            if row is None:
                raise NotFoundError("bid", bid_id)
            s.delete(row)
            s.commit()

    def list_all(self) -> List[Bid]:
        with Session(self.engine) as s:
            return list(s.exec(select(Bid).order_by(Bid.created_at)).all())

    def find_by_item(self, item_id: str) -> List[Bid]:
        """Bids on one item, highest amount first."""
        with Session(self.engine) as s:
            stmt = (
                select(Bid)
                .where(Bid.item_id == item_id)
                .order_by(col(Bid.amount).desc(), col(Bid.created_at).desc())
            )
            return list(s.exec(stmt).all())

    def find_by_item_and_email(self, item_id: str, email: str) -> List[Bid]:
        with Session(self.engine) as s:
            stmt = (
                select(Bid)
                .where(Bid.item_id == item_id, Bid.email == email)
                .order_by(col(Bid.amount).desc())
            )
            return list(s.exec(stmt).all())

    def find_by_email(self, email: str) -> List[Bid]:
        with Session(self.engine) as s:
            stmt = select(Bid).where(Bid.email == email).order_by(Bid.created_at)
            return list(s.exec(stmt).all())

    def find_by_bidder(self, bidder_name: str) -> List[Bid]:
        with Session(self.engine) as s:
            stmt = (
                select(Bid)
                .where(Bid.bidder_name == bidder_name)
                .order_by(Bid.created_at)
            )
            return list(s.exec(stmt).all())
