# bidengine/web/api.py
from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from bidengine.core import Category, NotFoundError, Reject
from bidengine.db import Bid, Item
from bidengine.service import Backend


class BidIn(BaseModel):
    item_id: str
    bidder_name: str = Field(min_length=1)
    amount: Decimal = Field(
        gt=0, max_digits=12, decimal_places=2, allow_inf_nan=False
    )
    email: str


class BidOut(BaseModel):
    id: str
    item_id: str
    item_name: Optional[str] = None
    bidder_name: str
    amount: float
    email: str
    created_at: str


class ItemIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    initial_price: Decimal = Field(
        gt=0, max_digits=12, decimal_places=2, allow_inf_nan=False
    )
    end_time: datetime
    creator: str
    category: Category = Category.OTHER


class ItemUpdate(ItemIn):
    active: bool = True


class ItemOut(BaseModel):
    id: str
    name: str
    description: str
    initial_price: float
    end_time: str
    active: bool
    creator: str
    category: Category
    highest_bid: float
    highest_bidder: Optional[str] = None


def _backend(request: Request) -> Backend:
    return request.app.state.backend


def _to_bid_out(b: Bid, item_name: Optional[str] = None) -> BidOut:
    return BidOut(
        id=b.id,
        item_id=b.item_id,
        item_name=item_name,
        bidder_name=b.bidder_name,
        amount=float(b.amount),
        email=b.email,
        created_at=b.created_at.isoformat(),
    )


def _to_item_out(backend: Backend, item: Item) -> ItemOut:
    highest, top = backend.highest_for(item)
    return ItemOut(
        id=item.id,
        name=item.name,
        description=item.description,
        initial_price=float(item.initial_price),
        end_time=item.end_time.isoformat(),
        active=item.active,
        creator=item.creator,
        category=item.category,
        highest_bid=float(highest),
        highest_bidder=top.bidder_name if top else None,
    )


def _bids_out(backend: Backend, rows: List[Bid]) -> List[BidOut]:
    names: dict[str, Optional[str]] = {}
    out = []
    for b in rows:
        if b.item_id not in names:
            item = backend.items.get(b.item_id)
            names[b.item_id] = item.name if item else None
        out.append(_to_bid_out(b, names[b.item_id]))
    return out


def _reject_to_http(reject: Reject) -> HTTPException:
    return HTTPException(
        reject.kind.http_status,
        {
            "kind": reject.kind.value,
            "reason": reject.reason.value,
            "message": reject.message,
            "retryable": reject.retryable,
        },
    )


def build_api(backend: Backend) -> FastAPI:
    api = FastAPI(
        title="bidengine API",
        version="1.0.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
    )
    api.state.backend = backend

    # ---- bids -------------------------------------------------------------

    @api.post("/bids", response_model=BidOut, status_code=201)
    async def place_bid(payload: BidIn, request: Request):
        b = _backend(request)
        outcome = await b.place_bid(
            payload.item_id, payload.bidder_name, payload.amount, payload.email
        )
        if isinstance(outcome, Reject):
            raise _reject_to_http(outcome)
        return _bids_out(b, [outcome])[0]

    @api.get("/bids", response_model=List[BidOut])
    def list_bids(
        request: Request,
        item_id: Optional[str] = None,
        email: Optional[str] = None,
        bidder: Optional[str] = None,
    ):
        b = _backend(request)
        if item_id:
            rows = b.bids.find_by_item(item_id)
        elif email:
            if not b.email_policy(email):
                raise HTTPException(400, "Invalid email format")
            rows = b.bids.find_by_email(email)
        elif bidder:
            rows = b.bids.find_by_bidder(bidder)
        else:
            rows = b.bids.list_all()
        return _bids_out(b, rows)

    @api.get("/bids/{bid_id}", response_model=BidOut)
    def get_bid(bid_id: str, request: Request):
        b = _backend(request)
        try:
            row = b.bids.get(bid_id)
        except NotFoundError as exc:
            raise HTTPException(404, str(exc))
        return _bids_out(b, [row])[0]

    @api.delete("/bids/{bid_id}", status_code=204)
    def delete_bid(bid_id: str, request: Request):
        try:
            _backend(request).bids.delete(bid_id)
        except NotFoundError as exc:
            raise HTTPException(404, str(exc))

    # ---- items ------------------------------------------------------------

    @api.get("/items", response_model=List[ItemOut])
    def list_items(request: Request, active_only: bool = False):
        b = _backend(request)
        rows = b.active_items() if active_only else b.items.list_all()
        return [_to_item_out(b, i) for i in rows]

    @api.get("/items/search", response_model=List[ItemOut])
    def search_items(request: Request, name: str = Query(..., min_length=1)):
        b = _backend(request)
        rows = b.items.search(name)
        if not rows:
            raise HTTPException(404, f"No item matches {name!r}")
        return [_to_item_out(b, i) for i in rows]

    @api.get("/items/{item_id}", response_model=ItemOut)
    def get_item(item_id: str, request: Request):
        b = _backend(request)
        try:
            item = b.items.require(item_id)
        except NotFoundError as exc:
            raise HTTPException(404, str(exc))
        return _to_item_out(b, item)

    @api.post("/items", response_model=ItemOut, status_code=201)
    def create_item(payload: ItemIn, request: Request):
        b = _backend(request)
        try:
            item = b.create_item(**payload.model_dump())
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return _to_item_out(b, item)

    @api.put("/items/{item_id}", response_model=ItemOut)
    def update_item(item_id: str, payload: ItemUpdate, request: Request):
        b = _backend(request)
        try:
            item = b.update_item(item_id, **payload.model_dump())
        except NotFoundError as exc:
            raise HTTPException(404, str(exc))
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        return _to_item_out(b, item)

    @api.delete("/items/{item_id}", status_code=204)
    def delete_item(item_id: str, request: Request):
        try:
            _backend(request).delete_item(item_id)
        except NotFoundError as exc:
            raise HTTPException(404, str(exc))

    # ---- maintenance ------------------------------------------------------

    @api.post("/sweep")
    def sweep(request: Request):
        return {"deactivated": _backend(request).sweep_expired_items()}

    @api.get("/metrics")
    def metrics(request: Request):
        return _backend(request).metrics.snapshot()

    return api
