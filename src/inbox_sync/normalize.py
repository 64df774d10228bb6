"""Map heterogeneous message and conversation payloads onto canonical records."""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from inbox_sync.identity import canonical_key, is_whatsapp, same_party, strip_transport
from inbox_sync.records import (
    DIRECTION_OTHER,
    DIRECTION_SELF,
    EPOCH,
    STATUS_DELIVERED,
    STATUS_SENT,
    Conversation,
    Message,
    coerce_status,
    utcnow,
)

logger = logging.getLogger(__name__)

SOURCE_HISTORY = "history"
SOURCE_PUSH = "push"
SOURCE_LOCAL = "local"

PREVIEW_LIMIT = 47
MEDIA_PREVIEW = "Media"

_ID_FIELDS = ("message_sid", "messageSid", "id", "sid", "sms_sid", "whatsappMessageSid", "whatsapp_message_sid")
_TIME_FIELDS = (
    "sent_at",
    "sentAt",
    "createdAt",
    "created_at",
    "updatedAt",
    "updated_at",
    "time",
    "timestamp",
)
_SELF_WORDS = {"self", "outbound", "outbound-api", "outbound-reply", "outgoing", "sent"}
_OTHER_WORDS = {"other", "inbound", "incoming", "received"}

# Epoch values above this are treated as milliseconds.
_MS_THRESHOLD = 100_000_000_000


class MalformedRecord(ValueError):
    pass


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse ISO-8601 strings, epoch seconds or epoch milliseconds."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lstrip("-").isdigit():
            return parse_timestamp(int(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    return None


def _first_str(raw: Mapping[str, Any], fields: Iterable[str]) -> str:
    for field in fields:
        value = raw.get(field)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return ""


def _resolve_sent_at(raw: Mapping[str, Any], now: datetime) -> datetime:
    for field in _TIME_FIELDS:
        parsed = parse_timestamp(raw.get(field))
        if parsed is not None:
            return parsed
    return now


def _resolve_direction(raw: Mapping[str, Any], own_number: str) -> str:
    for field in ("direction", "sender"):
        value = raw.get(field)
        if isinstance(value, str):
            word = value.strip().lower()
            if word in _SELF_WORDS:
                return DIRECTION_SELF
            if word in _OTHER_WORDS:
                return DIRECTION_OTHER
    origin = _first_str(raw, ("from", "from_number", "fromNumber", "sender"))
    if own_number and same_party(origin, own_number):
        return DIRECTION_SELF
    return DIRECTION_OTHER


def _fallback_id(conversation_key: str, sent_at: datetime, body: str, occurrence: int) -> str:
    seed = f"{conversation_key}|{sent_at.isoformat()}|{body}|{occurrence}".encode("utf-8")
    return f"msg_{hashlib.sha256(seed).hexdigest()[:16]}"


def new_temp_id() -> str:
    return f"tmp_{secrets.token_hex(8)}"


def normalize_message(
    raw: Mapping[str, Any],
    own_number: str,
    *,
    source: str,
    conversation_key: Optional[str] = None,
    occurrence: int = 0,
    now: Optional[datetime] = None,
) -> Message:
    if not isinstance(raw, Mapping):
        raise MalformedRecord(f"message record must be a mapping, got {type(raw).__name__}")

    now = now or utcnow()
    direction = _resolve_direction(raw, own_number)
    if direction == DIRECTION_SELF:
        counterpart = _first_str(raw, ("to", "to_number", "toNumber"))
    else:
        counterpart = _first_str(raw, ("from", "from_number", "fromNumber", "number"))

    key = canonical_key(counterpart) or canonical_key(conversation_key or "")
    if not key:
        raise MalformedRecord("message record has no counterpart identity")

    body_value = raw.get("text")
    if body_value is None:
        body_value = raw.get("body")
    if body_value is None:
        body_value = raw.get("message")
    body = "" if body_value is None else str(body_value)

    sent_at = _resolve_sent_at(raw, now)

    message_id = _first_str(raw, _ID_FIELDS)
    if not message_id:
        message_id = new_temp_id() if source == SOURCE_LOCAL else _fallback_id(key, sent_at, body, occurrence)

    status = coerce_status(raw.get("status"))
    if status is None:
        status = STATUS_SENT if direction == DIRECTION_SELF else STATUS_DELIVERED

    media_url = raw.get("media_url", raw.get("mediaUrl"))
    media_type = raw.get("media_type", raw.get("mediaType"))
    channel = raw.get("type") if raw.get("type") in ("sms", "whatsapp") else None
    if channel is None:
        channel = "whatsapp" if is_whatsapp(raw.get("from")) or is_whatsapp(raw.get("to")) else "sms"

    return Message(
        id=message_id,
        conversation_key=key,
        body=body,
        direction=direction,
        sent_at=sent_at,
        status=status,
        media_url=str(media_url) if media_url else None,
        media_type=str(media_type) if media_type else None,
        deleted=bool(raw.get("is_deleted") or raw.get("deleted")),
        channel=channel,
        counterpart=strip_transport(counterpart) or key,
        delivered_at=parse_timestamp(raw.get("delivered_at", raw.get("deliveredAt"))),
        read_at=parse_timestamp(raw.get("read_at", raw.get("readAt"))),
    )


def normalize_and_sort(
    raws: Iterable[Any],
    own_number: str,
    *,
    source: str,
    conversation_key: Optional[str] = None,
) -> List[Message]:
    """Normalize every record and sort by ``sent_at`` (stable for ties)."""

    now = utcnow()
    messages: List[Message] = []
    seen: Dict[Tuple[str, datetime, str], int] = {}
    for index, raw in enumerate(raws):
        try:
            message = normalize_message(raw, own_number, source=source, conversation_key=conversation_key, now=now)
        except MalformedRecord as exc:
            logger.warning("dropping malformed %s record #%d: %s", source, index, exc)
            continue
        if source != SOURCE_LOCAL and not _first_str(raw, _ID_FIELDS):
            group = (message.conversation_key, message.sent_at, message.body)
            occurrence = seen.get(group, 0)
            seen[group] = occurrence + 1
            if occurrence:
                message = replace(
                    message,
                    id=_fallback_id(message.conversation_key, message.sent_at, message.body, occurrence),
                )
        messages.append(message)
    messages.sort(key=lambda message: message.sent_at)
    return messages


def preview_text(body: str, media_type: Optional[str] = None) -> str:
    text = (body or "").strip()
    if not text:
        return MEDIA_PREVIEW if media_type else ""
    if len(text) > PREVIEW_LIMIT:
        return text[:PREVIEW_LIMIT] + "..."
    return text


def normalize_conversation(raw: Mapping[str, Any], *, origin: str) -> Optional[Conversation]:
    if not isinstance(raw, Mapping):
        return None
    number = _first_str(raw, ("number", "contactNumber", "phone", "identity"))
    key = canonical_key(number)
    if not key:
        return None

    unread = raw.get("unread", raw.get("unreadCount", 0))
    try:
        unread_count = max(0, int(unread))
    except (TypeError, ValueError):
        unread_count = 0

    last_activity_at = EPOCH
    for field in ("time", "lastActivityAt", "updatedAt", "timestamp"):
        parsed = parse_timestamp(raw.get(field))
        if parsed is not None:
            last_activity_at = parsed
            break

    return Conversation(
        key=key,
        number=strip_transport(number),
        display_name=_first_str(raw, ("name", "displayName", "contactName")),
        last_message_preview=_first_str(raw, ("lastMessage", "lastMessagePreview", "last_message")),
        last_activity_at=last_activity_at,
        unread_count=unread_count,
        origin=origin,
    )
