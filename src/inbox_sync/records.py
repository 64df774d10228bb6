from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

DIRECTION_SELF = "self"
DIRECTION_OTHER = "other"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"

STATUS_CHAIN = (STATUS_PENDING, STATUS_SENT, STATUS_DELIVERED, STATUS_READ)
_RANKS = {status: rank for rank, status in enumerate(STATUS_CHAIN)}

# Provider status words folded onto the chain.
_STATUS_ALIASES = {
    "queued": STATUS_PENDING,
    "accepted": STATUS_PENDING,
    "scheduled": STATUS_PENDING,
    "sending": STATUS_PENDING,
    "pending": STATUS_PENDING,
    "sent": STATUS_SENT,
    "delivered": STATUS_DELIVERED,
    "received": STATUS_DELIVERED,
    "read": STATUS_READ,
    "seen": STATUS_READ,
    "failed": STATUS_FAILED,
    "undelivered": STATUS_FAILED,
    "canceled": STATUS_FAILED,
    "cancelled": STATUS_FAILED,
}

ORIGIN_SERVER = "server"
ORIGIN_LOCAL = "local"
ORIGIN_LIVE = "live"

DELETED_PLACEHOLDER = "This message was deleted"
CLEARED_PREVIEW = "Chat cleared"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_status(value: object) -> Optional[str]:
    """Map a provider status word onto the status chain, or None if unknown."""

    if not isinstance(value, str):
        return None
    return _STATUS_ALIASES.get(value.strip().lower())


def status_rank(status: str) -> int:
    return _RANKS.get(status, -1)


def can_transition(current: str, new: str, direction: str = DIRECTION_SELF) -> bool:
    """Return True when moving from ``current`` to ``new`` is allowed.

    Forward moves along the chain (or staying put) are allowed. ``failed`` is
    reachable only from pending/sent/delivered on self-originated records and
    is terminal.
    """

    if current == STATUS_FAILED:
        return False
    if new == STATUS_FAILED:
        return direction == DIRECTION_SELF and current in (STATUS_PENDING, STATUS_SENT, STATUS_DELIVERED)
    if new not in _RANKS:
        return False
    return status_rank(new) >= status_rank(current)


@dataclass(frozen=True)
class Message:
    id: str
    conversation_key: str
    body: str
    direction: str
    sent_at: datetime
    status: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    deleted: bool = False
    channel: str = "sms"
    counterpart: str = ""
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    @property
    def is_self(self) -> bool:
        return self.direction == DIRECTION_SELF


@dataclass(frozen=True)
class Conversation:
    key: str
    number: str
    display_name: str = ""
    last_message_preview: str = ""
    last_activity_at: datetime = EPOCH
    unread_count: int = 0
    origin: str = ORIGIN_SERVER


@dataclass(frozen=True)
class PresenceState:
    key: str
    online: bool = False
    last_seen_at: Optional[datetime] = None
    typing: bool = False
