from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from inbox_sync.identity import canonical_key, strip_transport
from inbox_sync.records import ORIGIN_LIVE, ORIGIN_SERVER, Conversation

_NUMBER_LIKE_RE = re.compile(r"(?:whatsapp:)?[\d\s()+\-.]+", flags=re.IGNORECASE)


def _name_rank(conversation: Conversation) -> int:
    name = conversation.display_name.strip()
    if not name:
        return 0
    # A name that is only a formatted number is less complete than a real one.
    if _NUMBER_LIKE_RE.fullmatch(name):
        return 1
    return 2


def _combine(primary: Conversation, secondary: Conversation) -> Conversation:
    """Union of two entries for the same key; ``primary`` wins ties."""

    if secondary.last_activity_at > primary.last_activity_at:
        last_activity_at = secondary.last_activity_at
        preview = secondary.last_message_preview or primary.last_message_preview
    else:
        last_activity_at = primary.last_activity_at
        preview = primary.last_message_preview or secondary.last_message_preview

    name_source = secondary if _name_rank(secondary) > _name_rank(primary) else primary
    origin = ORIGIN_SERVER if ORIGIN_SERVER in (primary.origin, secondary.origin) else primary.origin
    return replace(
        primary,
        number=primary.number or secondary.number,
        display_name=name_source.display_name,
        last_message_preview=preview,
        last_activity_at=last_activity_at,
        unread_count=max(primary.unread_count, secondary.unread_count),
        origin=origin,
    )


class ConversationIndex:
    """Deduplicated conversations keyed by canonical identity.

    The list order is re-derived after every mutation: most recent activity
    first, with the most recently touched entry first among equal timestamps.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Conversation] = {}
        self._order: List[str] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: object) -> bool:
        return canonical_key(identity) in self._entries

    def get(self, identity: str) -> Optional[Conversation]:
        return self._entries.get(canonical_key(identity))

    def ordered(self) -> Tuple[Conversation, ...]:
        return tuple(self._entries[key] for key in self._order)

    def total_unread(self) -> int:
        return sum(entry.unread_count for entry in self._entries.values())

    def merge_snapshot(
        self,
        server_list: Iterable[Conversation],
        local_cache_list: Iterable[Conversation] = (),
    ) -> Tuple[Conversation, ...]:
        """Merge a server snapshot and the local cache into the index.

        Entries already in memory (live updates that landed while the fetch
        was in flight) are folded in rather than overwritten.
        """

        merged: Dict[str, Conversation] = {}
        for entry in server_list:
            current = merged.get(entry.key)
            merged[entry.key] = entry if current is None else _combine(current, entry)
        for entry in local_cache_list:
            current = merged.get(entry.key)
            merged[entry.key] = entry if current is None else _combine(current, entry)
        for key, existing in self._entries.items():
            current = merged.get(key)
            merged[key] = existing if current is None else _combine(current, existing)

        self._entries = merged
        self._order = [key for key in self._order if key in merged] + [
            key for key in merged if key not in self._order
        ]
        self._resort()
        return self.ordered()

    def ensure(self, identity: str, *, origin: str = ORIGIN_LIVE, display_name: str = "") -> Conversation:
        key = self._require_key(identity)
        entry = self._entries.get(key)
        if entry is None:
            number = strip_transport(identity) or key
            entry = Conversation(key=key, number=number, display_name=display_name or number, origin=origin)
            self._entries[key] = entry
            self._order.append(key)
            self._resort()
        return entry

    def apply_incoming(
        self,
        identity: str,
        preview_text: str,
        timestamp: datetime,
        is_background: bool,
    ) -> Conversation:
        entry = self.ensure(identity)
        changes: Dict[str, object] = {}
        if timestamp >= entry.last_activity_at:
            changes["last_message_preview"] = preview_text
            changes["last_activity_at"] = timestamp
        if is_background:
            changes["unread_count"] = entry.unread_count + 1
        return self._update(entry.key, touch=True, **changes)

    def set_preview(self, identity: str, preview_text: str, timestamp: Optional[datetime] = None) -> Conversation:
        entry = self.ensure(identity)
        changes: Dict[str, object] = {"last_message_preview": preview_text}
        if timestamp is not None and timestamp >= entry.last_activity_at:
            changes["last_activity_at"] = timestamp
        return self._update(entry.key, touch=timestamp is not None, **changes)

    def reset_unread(self, identity: str) -> Optional[Conversation]:
        key = canonical_key(identity)
        if key not in self._entries:
            return None
        return self._update(key, unread_count=0)

    def rename(self, identity: str, display_name: str) -> Optional[Conversation]:
        key = canonical_key(identity)
        if key not in self._entries or not display_name.strip():
            return None
        return self._update(key, display_name=display_name.strip())

    def remove(self, identity: str) -> Optional[Conversation]:
        key = canonical_key(identity)
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._order.remove(key)
        return entry

    def _update(self, key: str, *, touch: bool = False, **changes: object) -> Conversation:
        entry = replace(self._entries[key], **changes)
        self._entries[key] = entry
        if touch:
            self._order.remove(key)
            self._order.insert(0, key)
        self._resort()
        return entry

    def _resort(self) -> None:
        self._order.sort(key=lambda key: self._entries[key].last_activity_at, reverse=True)

    @staticmethod
    def _require_key(identity: str) -> str:
        key = canonical_key(identity)
        if not key:
            raise ValueError(f"not a usable identity: {identity!r}")
        return key
