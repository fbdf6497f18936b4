"""Derived state of an upload link.

The state is never stored. It is computed from the link row and the
current time whenever a caller needs it, so expiry takes effect at request
time without a background sweep.
"""

import enum
import time
from typing import Any, Mapping, Optional

from .errors import LinkDeleted, LinkExpired, NeedADropError, QuotaExceeded


class LinkState(str, enum.Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    DELETED = "deleted"

    @property
    def accepts_uploads(self) -> bool:
        return self is LinkState.ACTIVE


def is_expired(expires_at: Optional[float], now: float) -> bool:
    if expires_at is None:
        return False
    return now >= float(expires_at)


def link_state(link: Mapping[str, Any], now: Optional[float] = None) -> LinkState:
    """Return the lifecycle state of *link* at *now*.

    Precedence is deleted, then expired, then exhausted: an expired link with
    quota left is still expired, and a tombstoned link is deleted whatever
    its other fields say.
    """

    if now is None:
        now = time.time()
    if link["deleted_at"] is not None:
        return LinkState.DELETED
    if is_expired(link["expires_at"], now):
        return LinkState.EXPIRED
    if int(link["quota_used"]) >= int(link["quota_total"]):
        return LinkState.EXHAUSTED
    return LinkState.ACTIVE


def rejection_for(state: LinkState, requested: int = 0) -> Optional[NeedADropError]:
    """Map a non-accepting state to the error an upload attempt raises."""

    if state is LinkState.DELETED:
        return LinkDeleted()
    if state is LinkState.EXPIRED:
        return LinkExpired()
    if state is LinkState.EXHAUSTED:
        return QuotaExceeded(requested, 0)
    return None
