"""Validated push events: the only shapes the reconciliation engine consumes."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Union

from inbox_sync.identity import canonical_key
from inbox_sync.normalize import SOURCE_PUSH, MalformedRecord, normalize_message, parse_timestamp
from inbox_sync.records import DIRECTION_SELF, Message, coerce_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingMessage:
    kind: ClassVar[str] = "incoming_message"
    message: Message


@dataclass(frozen=True)
class OutgoingMessage:
    """A message sent from this account elsewhere (another device, an API)."""

    kind: ClassVar[str] = "outgoing_message"
    message: Message


@dataclass(frozen=True)
class StatusUpdate:
    kind: ClassVar[str] = "message_status_update"
    message_id: str
    status: str
    identity: str = ""


@dataclass(frozen=True)
class MessageDeleted:
    kind: ClassVar[str] = "message_deleted"
    message_id: str
    identity: str = ""


@dataclass(frozen=True)
class ConversationCleared:
    kind: ClassVar[str] = "conversation_cleared"
    identity: str


@dataclass(frozen=True)
class PresenceUpdate:
    kind: ClassVar[str] = "presence"
    identity: str
    online: bool
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class TypingUpdate:
    kind: ClassVar[str] = "typing"
    identity: str
    typing: bool


Event = Union[
    IncomingMessage,
    OutgoingMessage,
    StatusUpdate,
    MessageDeleted,
    ConversationCleared,
    PresenceUpdate,
    TypingUpdate,
]


def _text(body: Mapping[str, Any], *fields: str) -> str:
    for field in fields:
        value = body.get(field)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return ""


def _require_identity(body: Mapping[str, Any], *fields: str) -> str:
    identity = _text(body, *fields)
    if not canonical_key(identity):
        raise MalformedRecord(f"missing identity in {sorted(body.keys())}")
    return identity


def _message_id(body: Mapping[str, Any]) -> str:
    message_id = _text(body, "message_sid", "messageSid", "sid", "id")
    if not message_id:
        raise MalformedRecord("missing message id")
    return message_id


def _parse_incoming(body: Mapping[str, Any], own_number: str) -> Event:
    message = normalize_message(body, own_number, source=SOURCE_PUSH)
    if message.direction == DIRECTION_SELF:
        return OutgoingMessage(message=message)
    return IncomingMessage(message=message)


def _parse_outgoing(body: Mapping[str, Any], own_number: str) -> Event:
    if "direction" not in body and "sender" not in body:
        body = {**body, "direction": "self"}
    message = normalize_message(body, own_number, source=SOURCE_PUSH)
    if message.direction != DIRECTION_SELF:
        return IncomingMessage(message=message)
    return OutgoingMessage(message=message)


def _parse_status(body: Mapping[str, Any], own_number: str) -> Event:
    status = coerce_status(body.get("status"))
    if status is None:
        raise MalformedRecord(f"unknown status {body.get('status')!r}")
    return StatusUpdate(message_id=_message_id(body), status=status, identity=_text(body, "number", "to", "from"))


def _parse_deleted(body: Mapping[str, Any], own_number: str) -> Event:
    return MessageDeleted(message_id=_message_id(body), identity=_text(body, "number", "to", "from"))


def _parse_cleared(body: Mapping[str, Any], own_number: str) -> Event:
    return ConversationCleared(identity=_require_identity(body, "number", "phone"))


def _presence_parser(forced: Optional[bool]) -> Callable[[Mapping[str, Any], str], Event]:
    def _parse(body: Mapping[str, Any], own_number: str) -> Event:
        online = forced if forced is not None else bool(body.get("online"))
        return PresenceUpdate(
            identity=_require_identity(body, "number", "phone", "from"),
            online=online,
            last_seen_at=parse_timestamp(body.get("lastSeen", body.get("last_seen"))),
        )

    return _parse


def _typing_parser(forced: Optional[bool]) -> Callable[[Mapping[str, Any], str], Event]:
    def _parse(body: Mapping[str, Any], own_number: str) -> Event:
        typing = forced if forced is not None else bool(body.get("typing"))
        return TypingUpdate(identity=_require_identity(body, "number", "from", "phone"), typing=typing)

    return _parse


_PARSERS: Dict[str, Callable[[Mapping[str, Any], str], Event]] = {
    "incoming_message": _parse_incoming,
    "incoming_whatsapp": _parse_incoming,
    "incoming_sms": _parse_incoming,
    "new_message": _parse_incoming,
    "outgoing_message": _parse_outgoing,
    "message_status_update": _parse_status,
    "message_deleted": _parse_deleted,
    "conversation_cleared": _parse_cleared,
    "presence": _presence_parser(None),
    "user_online": _presence_parser(True),
    "user_offline": _presence_parser(False),
    "typing": _typing_parser(None),
    "typing_start": _typing_parser(True),
    "typing_stop": _typing_parser(False),
}

EVENT_KINDS = frozenset(_PARSERS)


def parse_frame(frame: object, own_number: str) -> Optional[Event]:
    """Validate one push frame; malformed or unknown frames yield None.

    Accepts ``{"v": 1, "t": kind, "body": {...}}`` and ``{"event": kind,
    "data": {...}}``, either as a mapping or as JSON text.
    """

    if isinstance(frame, (bytes, bytearray)):
        frame = frame.decode("utf-8", errors="replace")
    if isinstance(frame, str):
        try:
            frame = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning("dropping non-JSON push frame")
            return None
    if not isinstance(frame, Mapping):
        logger.warning("dropping push frame of type %s", type(frame).__name__)
        return None

    kind = frame.get("t", frame.get("event"))
    body = frame.get("body", frame.get("data"))
    parser = _PARSERS.get(kind) if isinstance(kind, str) else None
    if parser is None:
        logger.info("dropping push frame with unknown kind %r", kind)
        return None
    if not isinstance(body, Mapping):
        logger.warning("dropping %s frame without a body", kind)
        return None
    try:
        return parser(body, own_number)
    except (MalformedRecord, TypeError, ValueError) as exc:
        logger.warning("dropping malformed %s frame: %s", kind, exc)
        return None
