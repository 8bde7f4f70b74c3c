from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Protocol, Union


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


class Category(str, Enum):
    ELECTRONICS = "ELECTRONICS"
    FASHION = "FASHION"
    HOME = "HOME"
    SPORTS = "SPORTS"
    COLLECTIBLES = "COLLECTIBLES"
    AUTOMOTIVE = "AUTOMOTIVE"
    BOOKS = "BOOKS"
    TOYS = "TOYS"
    ART = "ART"
    JEWELRY = "JEWELRY"
    OTHER = "OTHER"


class AuctionItem(Protocol):
    id: str
    initial_price: Decimal
    end_time: datetime
    active: bool


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    BUSINESS_RULE = "business_rule"
    VALIDATION = "validation"
    CONTENTION = "contention"
    UNAVAILABLE = "unavailable"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.CONTENTION, ErrorKind.UNAVAILABLE)


_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.BUSINESS_RULE: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONTENTION: 409,
    ErrorKind.UNAVAILABLE: 503,
}


class RejectReason(str, Enum):
    ITEM_NOT_FOUND = "item_not_found"
    ITEM_NOT_ACTIVE = "item_not_active"
    ITEM_EXPIRED = "item_expired"
    INVALID_EMAIL = "invalid_email"
    BID_TOO_LOW = "bid_too_low"
    BID_NOT_HIGHER_THAN_OWN_PRIOR = "user_bid_not_higher"
    LOCK_TIMEOUT = "lock_timeout"
    STORE_UNAVAILABLE = "store_unavailable"
    INVALID_AMOUNT = "invalid_amount"

    @property
    def kind(self) -> ErrorKind:
        return _REASON_KIND[self]

    @property
    def is_bid_rule(self) -> bool:
        """True for the rules about the auction itself, False for bad input."""
        return self in (
            RejectReason.ITEM_NOT_FOUND,
            RejectReason.ITEM_NOT_ACTIVE,
            RejectReason.ITEM_EXPIRED,
            RejectReason.BID_TOO_LOW,
        )

    @property
    def message(self) -> str:
        return _REASON_MESSAGE[self]


_REASON_KIND = {
    RejectReason.ITEM_NOT_FOUND: ErrorKind.NOT_FOUND,
    RejectReason.ITEM_NOT_ACTIVE: ErrorKind.BUSINESS_RULE,
    RejectReason.ITEM_EXPIRED: ErrorKind.BUSINESS_RULE,
    RejectReason.BID_TOO_LOW: ErrorKind.BUSINESS_RULE,
    RejectReason.INVALID_EMAIL: ErrorKind.VALIDATION,
    RejectReason.BID_NOT_HIGHER_THAN_OWN_PRIOR: ErrorKind.VALIDATION,
    RejectReason.LOCK_TIMEOUT: ErrorKind.CONTENTION,
    RejectReason.STORE_UNAVAILABLE: ErrorKind.UNAVAILABLE,
    RejectReason.INVALID_AMOUNT: ErrorKind.VALIDATION,
}

_REASON_MESSAGE = {
    RejectReason.ITEM_NOT_FOUND: "Item not found",
    RejectReason.ITEM_NOT_ACTIVE: "Item is not active",
    RejectReason.ITEM_EXPIRED: "Bidding time has expired for this item",
    RejectReason.INVALID_EMAIL: "Invalid email format",
    RejectReason.BID_TOO_LOW: "Bid amount must be higher than the current highest bid",
    RejectReason.BID_NOT_HIGHER_THAN_OWN_PRIOR: "Bid amount must be higher than your last bid",
    RejectReason.LOCK_TIMEOUT: "Item is busy with another bid, try again",
    RejectReason.STORE_UNAVAILABLE: "Bid store is unavailable, try again",
    RejectReason.INVALID_AMOUNT: "Bid amount must be a positive number with at most two decimal places",
}


@dataclass(frozen=True)
class BidRequest:
    item_id: str
    bidder_name: str
    amount: Decimal
    email: str


@dataclass(frozen=True)
class Accept:
    pass


@dataclass(frozen=True)
class Reject:
    reason: RejectReason

    @property
    def kind(self) -> ErrorKind:
        return self.reason.kind

    @property
    def message(self) -> str:
        return self.reason.message

    @property
    def retryable(self) -> bool:
        return self.reason.kind.retryable


Decision = Union[Accept, Reject]


class NotFoundError(LookupError):
    """Raised when an item or bid looked up by id does not exist."""

    def __init__(self, entity: str, key: str):
        super().__init__(f"{entity} {key!r} not found")
        self.entity = entity
        self.key = key


class LockTimeout(RuntimeError):
    """Raised when an item's bid lock could not be taken in time."""

    def __init__(self, item_id: str, timeout: Optional[float]):
        super().__init__(f"lock for item {item_id!r} not acquired within {timeout}s")
        self.item_id = item_id
        self.timeout = timeout


MONEY_PLACES = Decimal("0.01")
# largest value a Numeric(12, 2) column holds
MONEY_MAX = Decimal("9999999999.99")


def parse_money(value) -> Optional[Decimal]:
    """Positive, finite amount with at most two decimal places, else None."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except ArithmeticError:
        return None
    if not amount.is_finite() or amount <= 0 or amount > MONEY_MAX:
        return None
    cents = amount.quantize(MONEY_PLACES)
    if cents != amount:
        return None
    return cents
