"""
Bid acceptance rules.

`evaluate` is a pure function of its inputs. The checks run in a fixed order
and the first one that fails decides the reason reported back:

  1. item exists                    -> ITEM_NOT_FOUND
  2. item is active                 -> ITEM_NOT_ACTIVE
  3. end time is after `now`        -> ITEM_EXPIRED
  4. email looks like an address    -> INVALID_EMAIL
  5. amount beats the highest bid   -> BID_TOO_LOW
  6. amount beats bidder's own best -> BID_NOT_HIGHER_THAN_OWN_PRIOR
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from bidengine.core import (
    Accept,
    AuctionItem,
    BidRequest,
    Decision,
    Reject,
    RejectReason,
)

EmailPolicy = Callable[[str], bool]

_EMAIL_RE = re.compile(r"[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+")


def is_valid_email(email: str) -> bool:
    return bool(email) and _EMAIL_RE.fullmatch(email) is not None


def highest_bid(item: AuctionItem, amounts: Iterable[Decimal]) -> Decimal:
    """Highest accepted amount, or the item's starting price if nobody bid yet."""
    return max(amounts, default=item.initial_price)


def evaluate(
    item: Optional[AuctionItem],
    highest_so_far: Optional[Decimal],
    own_prior_highest: Optional[Decimal],
    candidate: BidRequest,
    *,
    now: datetime,
    email_policy: EmailPolicy = is_valid_email,
) -> Decision:
    if item is None:
        return Reject(RejectReason.ITEM_NOT_FOUND)
    if not item.active:
        return Reject(RejectReason.ITEM_NOT_ACTIVE)
    if item.end_time <= now:
        return Reject(RejectReason.ITEM_EXPIRED)
    if not email_policy(candidate.email):
        return Reject(RejectReason.INVALID_EMAIL)

    floor = item.initial_price if highest_so_far is None else highest_so_far
    if candidate.amount <= floor:
        return Reject(RejectReason.BID_TOO_LOW)
    # Redundant with BID_TOO_LOW while placements are serialized per item.
    if own_prior_highest is not None and candidate.amount <= own_prior_highest:
        return Reject(RejectReason.BID_NOT_HIGHER_THAN_OWN_PRIOR)
    return Accept()
