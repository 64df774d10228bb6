from __future__ import annotations

import bisect
from dataclasses import replace
from typing import Dict, Iterator, List, Optional, Tuple

from inbox_sync.records import DELETED_PLACEHOLDER, Message, can_transition


def _merge(existing: Message, incoming: Message) -> Message:
    """Fold a re-delivered record into the stored one.

    Position (``sent_at``) and conversation never change; status only moves
    forward; a deletion is sticky.
    """

    status = incoming.status if can_transition(existing.status, incoming.status, existing.direction) else existing.status
    if existing.deleted or incoming.deleted:
        body, media_url, media_type, deleted = DELETED_PLACEHOLDER, None, None, True
    else:
        body = incoming.body or existing.body
        media_url = incoming.media_url or existing.media_url
        media_type = incoming.media_type or existing.media_type
        deleted = False
    return replace(
        existing,
        body=body,
        media_url=media_url,
        media_type=media_type,
        deleted=deleted,
        status=status,
        delivered_at=existing.delivered_at or incoming.delivered_at,
        read_at=existing.read_at or incoming.read_at,
    )


class MessageStore:
    """Per-conversation message lists, unique by id and ordered by ``sent_at``."""

    def __init__(self) -> None:
        self._lists: Dict[str, List[Message]] = {}
        self._locations: Dict[str, str] = {}

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._locations

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._lists.keys()))

    def get(self, message_id: str) -> Optional[Message]:
        key = self._locations.get(message_id)
        if key is None:
            return None
        index = self._index_of(key, message_id)
        return self._lists[key][index]

    def messages(self, conversation_key: str) -> Tuple[Message, ...]:
        return tuple(self._lists.get(conversation_key, ()))

    def upsert(self, message: Message) -> Tuple[Message, bool]:
        """Insert ``message`` or merge it into the record with the same id.

        Returns the stored record and whether it was newly inserted.
        """

        if message.id in self._locations:
            key = self._locations[message.id]
            index = self._index_of(key, message.id)
            merged = _merge(self._lists[key][index], message)
            self._lists[key][index] = merged
            return merged, False

        items = self._lists.setdefault(message.conversation_key, [])
        position = bisect.bisect_right(items, message.sent_at, key=lambda item: item.sent_at)
        items.insert(position, message)
        self._locations[message.id] = message.conversation_key
        return message, True

    def replace(self, message: Message) -> Message:
        """Swap the stored record with the same id, keeping its position."""

        key = self._locations.get(message.id)
        if key is None:
            raise KeyError(message.id)
        index = self._index_of(key, message.id)
        self._lists[key][index] = message
        return message

    def rename(self, old_id: str, new_id: str) -> Message:
        key = self._locations.get(old_id)
        if key is None:
            raise KeyError(old_id)
        if new_id in self._locations:
            raise ValueError(f"message id {new_id!r} already stored")
        index = self._index_of(key, old_id)
        renamed = replace(self._lists[key][index], id=new_id)
        self._lists[key][index] = renamed
        del self._locations[old_id]
        self._locations[new_id] = key
        return renamed

    def remove(self, message_id: str) -> Optional[Message]:
        key = self._locations.pop(message_id, None)
        if key is None:
            return None
        index = self._index_of(key, message_id)
        return self._lists[key].pop(index)

    def clear(self, conversation_key: str) -> int:
        items = self._lists.pop(conversation_key, [])
        for item in items:
            self._locations.pop(item.id, None)
        return len(items)

    def _index_of(self, conversation_key: str, message_id: str) -> int:
        for index, item in enumerate(self._lists[conversation_key]):
            if item.id == message_id:
                return index
        raise KeyError(message_id)
