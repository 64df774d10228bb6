"""Reconciliation engine: the single writer of the message store and index.

Every operation here is synchronous. The engine never awaits anything; the
session performs I/O around it and feeds results back in whatever order they
resolve. Re-applying a record is always safe: messages are upserted by id,
statuses only move forward, and temporary ids are renamed, never duplicated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from inbox_sync.conversations import ConversationIndex
from inbox_sync.events import (
    ConversationCleared,
    Event,
    IncomingMessage,
    MessageDeleted,
    OutgoingMessage,
    PresenceUpdate,
    StatusUpdate,
    TypingUpdate,
)
from inbox_sync.identity import canonical_key
from inbox_sync.normalize import (
    SOURCE_HISTORY,
    SOURCE_LOCAL,
    normalize_and_sort,
    normalize_conversation,
    normalize_message,
    preview_text,
)
from inbox_sync.presence import PresenceTracker
from inbox_sync.records import (
    CLEARED_PREVIEW,
    DELETED_PLACEHOLDER,
    ORIGIN_LOCAL,
    ORIGIN_SERVER,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_READ,
    STATUS_SENT,
    Conversation,
    Message,
    can_transition,
    coerce_status,
    utcnow,
)
from inbox_sync.store import MessageStore

logger = logging.getLogger(__name__)

TAB_ALL = "all"
TAB_UNREAD = "unread"
TAB_READ = "read"

EARLY_EVENT_LIMIT = 1024
# How far apart the local and server clocks may put the same send.
UNACKNOWLEDGED_MATCH_WINDOW = timedelta(minutes=5)

StatusSink = Callable[[List[str], str], object]
ChangeListener = Callable[[str, str], None]


class UnknownMessage(KeyError):
    pass


class DeleteNotAllowed(ValueError):
    pass


@dataclass(frozen=True)
class PendingSend:
    temp_id: str
    conversation_key: str
    body: str
    media_url: Optional[str]
    media_type: Optional[str]
    created_at: datetime


class ReconciliationEngine:
    def __init__(
        self,
        own_number: str,
        *,
        presence: PresenceTracker | None = None,
        outbox: StatusSink | None = None,
    ) -> None:
        self.own_number = own_number
        self.presence = presence if presence is not None else PresenceTracker()
        self._outbox = outbox
        self._store = MessageStore()
        self._index = ConversationIndex()
        self._pending: Dict[str, PendingSend] = {}
        self._unconfirmed: Set[str] = set()
        # Temporary ids whose ack carried no message id.
        self._awaiting_id: Dict[str, None] = {}
        # Status and deletion pushes for ids not stored yet (ack still in flight,
        # or history not fetched). Replayed when the id shows up.
        self._early_status: Dict[str, str] = {}
        self._early_deletions: Dict[str, None] = {}
        self._focused_key: Optional[str] = None
        self._listeners: List[ChangeListener] = []

    # -- wiring -----------------------------------------------------------

    def set_outbox(self, outbox: StatusSink | None) -> None:
        self._outbox = outbox

    def add_listener(self, listener: ChangeListener) -> None:
        """Register ``listener(scope, key)``; scope is "messages" or "conversations"."""

        self._listeners.append(listener)

    # -- read-only views --------------------------------------------------

    @property
    def focused_key(self) -> Optional[str]:
        return self._focused_key

    def messages(self, identity: str) -> Tuple[Message, ...]:
        return self._store.messages(canonical_key(identity))

    def get_message(self, message_id: str) -> Optional[Message]:
        return self._store.get(message_id)

    def conversations(self) -> Tuple[Conversation, ...]:
        return self._index.ordered()

    def conversation(self, identity: str) -> Optional[Conversation]:
        return self._index.get(identity)

    def total_unread(self) -> int:
        return self._index.total_unread()

    def pending_sends(self) -> Tuple[PendingSend, ...]:
        return tuple(self._pending.values())

    def is_confirmed(self, message_id: str) -> bool:
        return message_id in self._store and message_id not in self._unconfirmed

    def filter_conversations(self, tab: str = TAB_ALL, search: str = "") -> Tuple[Conversation, ...]:
        entries: Iterable[Conversation] = self._index.ordered()
        if tab == TAB_UNREAD:
            entries = [entry for entry in entries if entry.unread_count > 0]
        elif tab == TAB_READ:
            entries = [entry for entry in entries if entry.unread_count == 0 and entry.last_message_preview]
        needle = search.strip().lower()
        if needle:
            entries = [
                entry
                for entry in entries
                if needle in entry.display_name.lower() or needle in entry.number
            ]
        return tuple(entries)

    # -- snapshot and history ---------------------------------------------

    def load_snapshot(
        self,
        server_conversations: Iterable[Mapping[str, object]],
        local_cache: Iterable[Union[Conversation, Mapping[str, object]]] = (),
    ) -> Tuple[Conversation, ...]:
        server: List[Conversation] = []
        for raw in server_conversations:
            entry = normalize_conversation(raw, origin=ORIGIN_SERVER)
            if entry is None:
                logger.warning("dropping conversation without a usable number: %r", raw)
                continue
            server.append(entry)
        local: List[Conversation] = []
        for item in local_cache:
            entry = item if isinstance(item, Conversation) else normalize_conversation(item, origin=ORIGIN_LOCAL)
            if entry is not None:
                local.append(entry)
        ordered = self._index.merge_snapshot(server, local)
        self._changed("conversations", "")
        return ordered

    def apply_history(self, identity: str, raw_messages: Iterable[Mapping[str, object]]) -> Tuple[Message, ...]:
        """Merge a fetched history page into the store by message id."""

        key = self._require_key(identity)
        normalized = normalize_and_sort(raw_messages, self.own_number, source=SOURCE_HISTORY, conversation_key=key)
        self._index.ensure(identity, origin=ORIGIN_SERVER)
        latest: Optional[Message] = None
        for message in normalized:
            if message.conversation_key != key:
                message = replace(message, conversation_key=key)
            stored, _ = self._upsert(message)
            if latest is None or stored.sent_at >= latest.sent_at:
                latest = stored
        if latest is not None:
            current = self._index.get(key)
            if current is not None and latest.sent_at >= current.last_activity_at:
                self._index.set_preview(key, preview_text(latest.body, latest.media_type), latest.sent_at)
        self._changed("messages", key)
        self._changed("conversations", key)
        return self._store.messages(key)

    # -- focus --------------------------------------------------------------

    def focus(self, identity: Optional[str]) -> Optional[str]:
        key = canonical_key(identity) if identity else ""
        self._focused_key = key or None
        if identity and key:
            self._index.ensure(identity)
        return self._focused_key

    def acknowledge_read(self, identity: str) -> bool:
        """Reset unread for ``identity`` if it is still the focused conversation.

        Acknowledgments that resolve after the focus moved are no-ops.
        """

        key = canonical_key(identity)
        if not key or key != self._focused_key:
            logger.debug("discarding stale read acknowledgment for %s", key)
            return False
        self._index.reset_unread(key)
        self._changed("conversations", key)
        return True

    # -- optimistic sends ---------------------------------------------------

    def begin_send(
        self,
        identity: str,
        body: str,
        *,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        channel: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Message:
        key = self._require_key(identity)
        sent_at = now or utcnow()
        raw = {
            "direction": "self",
            "to": identity,
            "type": channel,
            "text": body,
            "status": STATUS_PENDING,
            "media_url": media_url,
            "media_type": media_type,
            "sent_at": sent_at,
        }
        message = normalize_message(raw, self.own_number, source=SOURCE_LOCAL, conversation_key=key, now=sent_at)
        stored, _ = self._store.upsert(message)
        self._pending[stored.id] = PendingSend(
            temp_id=stored.id,
            conversation_key=key,
            body=body,
            media_url=media_url,
            media_type=media_type,
            created_at=sent_at,
        )
        self._unconfirmed.add(stored.id)
        self._index.ensure(identity)
        self._index.set_preview(key, preview_text(body, media_type), sent_at)
        self._changed("messages", key)
        self._changed("conversations", key)
        return stored

    def confirm_send(self, temp_id: str, confirmed_id: str, status: str = STATUS_SENT) -> Optional[Message]:
        """Rename the temporary record to its confirmed id, in place."""

        self._pending.pop(temp_id, None)
        new_status = coerce_status(status) or STATUS_SENT
        temp = self._store.get(temp_id)
        if temp is None:
            logger.info("ack for %s arrived after its temporary record was dropped", temp_id)
            return self._store.get(confirmed_id) if confirmed_id else None

        if not confirmed_id:
            logger.warning("ack for %s carried no message id; matching it against the next history page", temp_id)
            self._awaiting_id[temp_id] = None
            return self._apply_status(temp_id, new_status)
        if confirmed_id == temp_id:
            return self._apply_status(temp_id, new_status)

        self._unconfirmed.discard(temp_id)
        if confirmed_id in self._store:
            # The push channel already delivered the confirmed record.
            self._store.remove(temp_id)
            self._advance(confirmed_id, temp.status)
            message = self._apply_status(confirmed_id, new_status)
        else:
            self._store.rename(temp_id, confirmed_id)
            self._apply_status(confirmed_id, new_status)
            message = self._apply_early(confirmed_id)
        self._changed("messages", temp.conversation_key)
        return message

    def fail_send(self, temp_id: str, *, hard: bool = True, error: str = "") -> Optional[Message]:
        """Roll back (hard) or mark failed (delivery failure after acceptance)."""

        pending = self._pending.pop(temp_id, None)
        message = self._store.get(temp_id)
        if message is None:
            return None
        key = message.conversation_key
        if hard:
            self._store.remove(temp_id)
            self._unconfirmed.discard(temp_id)
            self._refresh_preview(key)
            logger.warning("send to %s failed: %s", key, error or "rejected")
            result = None
        else:
            result = self._apply_status(temp_id, STATUS_FAILED)
            logger.warning("delivery to %s failed after acceptance: %s", key, error or "failed")
        if pending is None:
            logger.debug("failure for %s had no correlation entry", temp_id)
        self._changed("messages", key)
        return result

    # -- push events --------------------------------------------------------

    def dispatch(self, event: Event) -> None:
        if isinstance(event, IncomingMessage):
            self._on_incoming(event.message)
        elif isinstance(event, OutgoingMessage):
            self._on_outgoing(event.message)
        elif isinstance(event, StatusUpdate):
            self._on_status(event)
        elif isinstance(event, MessageDeleted):
            self._on_deleted(event)
        elif isinstance(event, ConversationCleared):
            self.clear_conversation(event.identity)
        elif isinstance(event, PresenceUpdate):
            self.presence.on_presence(event.identity, event.online, event.last_seen_at)
        elif isinstance(event, TypingUpdate):
            self.presence.on_typing(event.identity, event.typing)
        else:
            logger.warning("ignoring unsupported event %r", event)

    def _on_incoming(self, message: Message) -> None:
        key = message.conversation_key
        focused = key == self._focused_key
        stored, created = self._upsert(message)
        if not created:
            logger.debug("duplicate delivery of %s ignored", message.id)
            self._changed("messages", key)
            return

        self._index.apply_incoming(
            message.counterpart or key,
            preview_text(stored.body, stored.media_type),
            stored.sent_at,
            is_background=not focused,
        )
        if focused:
            self._mark_prior_read(key, stored.id)
        self._changed("messages", key)
        self._changed("conversations", key)

    def _on_outgoing(self, message: Message) -> None:
        key = message.conversation_key
        stored, created = self._upsert(message)
        if created:
            self._index.ensure(message.counterpart or key)
            self._index.set_preview(key, preview_text(stored.body, stored.media_type), stored.sent_at)
            self._changed("conversations", key)
        self._changed("messages", key)

    def _on_status(self, event: StatusUpdate) -> None:
        if event.message_id not in self._store:
            current = self._early_status.get(event.message_id)
            if current is None or can_transition(current, event.status):
                self._early_status[event.message_id] = event.status
                self._trim_early()
            if canonical_key(event.identity):
                self._index.ensure(event.identity)
            return
        message = self._apply_status(event.message_id, event.status)
        if message is not None:
            self._changed("messages", message.conversation_key)

    def _on_deleted(self, event: MessageDeleted) -> None:
        message = self._store.get(event.message_id)
        if message is None:
            self._early_deletions[event.message_id] = None
            self._trim_early()
            if canonical_key(event.identity):
                self._index.ensure(event.identity)
            return
        self._mark_deleted(message)
        self._changed("messages", message.conversation_key)

    # -- local actions --------------------------------------------------------

    def delete_locally(self, message_id: str) -> Message:
        removed = self._store.remove(message_id)
        if removed is None:
            raise UnknownMessage(message_id)
        self._pending.pop(message_id, None)
        self._unconfirmed.discard(message_id)
        self._awaiting_id.pop(message_id, None)
        self._refresh_preview(removed.conversation_key)
        self._changed("messages", removed.conversation_key)
        return removed

    def can_delete_for_everyone(self, message_id: str) -> bool:
        message = self._store.get(message_id)
        return (
            message is not None
            and message.is_self
            and not message.deleted
            and message.status != STATUS_FAILED
            and self.is_confirmed(message_id)
        )

    def require_deletable(self, message_id: str) -> Message:
        message = self._store.get(message_id)
        if message is None:
            raise UnknownMessage(message_id)
        if not self.can_delete_for_everyone(message_id):
            raise DeleteNotAllowed(f"message {message_id} cannot be deleted for everyone")
        return message

    def clear_conversation(self, identity: str) -> int:
        key = self._require_key(identity)
        removed = self._store.clear(key)
        for temp_id in [temp_id for temp_id, pending in self._pending.items() if pending.conversation_key == key]:
            self._pending.pop(temp_id, None)
            self._unconfirmed.discard(temp_id)
        self._index.ensure(identity)
        self._index.set_preview(key, CLEARED_PREVIEW)
        self._changed("messages", key)
        self._changed("conversations", key)
        return removed

    def remove_conversation(self, identity: str) -> Optional[Conversation]:
        key = canonical_key(identity)
        self._store.clear(key)
        for temp_id in [temp_id for temp_id, pending in self._pending.items() if pending.conversation_key == key]:
            self._pending.pop(temp_id, None)
            self._unconfirmed.discard(temp_id)
        if self._focused_key == key:
            self._focused_key = None
        removed = self._index.remove(key)
        self._changed("conversations", key)
        return removed

    def rename_conversation(self, identity: str, display_name: str) -> Optional[Conversation]:
        entry = self._index.rename(identity, display_name)
        if entry is not None:
            self._changed("conversations", entry.key)
        return entry

    def start_conversation(self, identity: str, display_name: str = "") -> Conversation:
        entry = self._index.ensure(identity, origin=ORIGIN_LOCAL, display_name=display_name)
        self._changed("conversations", entry.key)
        return entry

    # -- internals ----------------------------------------------------------

    def _upsert(self, message: Message) -> Tuple[Message, bool]:
        adopted = False
        if self._awaiting_id and message.is_self and message.id not in self._store:
            adopted = self._adopt_unacknowledged(message)
        stored, created = self._store.upsert(message)
        if created or adopted:
            stored = self._apply_early(stored.id) or stored
        return stored, created

    def _adopt_unacknowledged(self, message: Message) -> bool:
        """Rename the closest id-less send with the same body to ``message.id``."""

        best: Optional[Message] = None
        for temp_id in list(self._awaiting_id):
            temp = self._store.get(temp_id)
            if temp is None:
                self._awaiting_id.pop(temp_id, None)
                continue
            if temp.conversation_key != message.conversation_key or temp.body != message.body:
                continue
            gap = abs(temp.sent_at - message.sent_at)
            if gap > UNACKNOWLEDGED_MATCH_WINDOW:
                continue
            if best is None or gap < abs(best.sent_at - message.sent_at):
                best = temp
        if best is None:
            return False
        self._awaiting_id.pop(best.id, None)
        self._unconfirmed.discard(best.id)
        self._store.rename(best.id, message.id)
        logger.info("matched unacknowledged send %s to %s", best.id, message.id)
        return True

    def _apply_early(self, message_id: str) -> Optional[Message]:
        early = self._early_status.pop(message_id, None)
        if early is not None:
            self._apply_status(message_id, early)
        if message_id in self._early_deletions:
            self._early_deletions.pop(message_id, None)
            message = self._store.get(message_id)
            if message is not None:
                self._mark_deleted(message)
        return self._store.get(message_id)

    def _apply_status(self, message_id: str, status: str) -> Optional[Message]:
        message = self._store.get(message_id)
        if message is None:
            return None
        if message.status == status:
            return message
        if not can_transition(message.status, status, message.direction):
            logger.debug("ignoring %s -> %s for %s", message.status, status, message_id)
            return message
        now = utcnow()
        changes: Dict[str, object] = {"status": status}
        if status == STATUS_DELIVERED and message.delivered_at is None:
            changes["delivered_at"] = now
        if status == STATUS_READ and message.read_at is None:
            changes["read_at"] = now
        return self._store.replace(replace(message, **changes))

    def _advance(self, message_id: str, status: str) -> None:
        if status not in (STATUS_PENDING, STATUS_FAILED):
            self._apply_status(message_id, status)

    def _mark_deleted(self, message: Message) -> None:
        self._store.replace(replace(message, deleted=True, body=DELETED_PLACEHOLDER, media_url=None, media_type=None))
        items = self._store.messages(message.conversation_key)
        if items and items[-1].id == message.id:
            self._index.set_preview(message.conversation_key, DELETED_PLACEHOLDER)
            self._changed("conversations", message.conversation_key)

    def _mark_prior_read(self, key: str, incoming_id: str) -> None:
        """The other party replied, so they have seen our earlier messages."""

        read_ids: List[str] = []
        for message in self._store.messages(key):
            if message.id == incoming_id:
                break
            if not message.is_self or message.status not in (STATUS_SENT, STATUS_DELIVERED):
                continue
            self._apply_status(message.id, STATUS_READ)
            if self.is_confirmed(message.id):
                read_ids.append(message.id)
        if read_ids and self._outbox is not None:
            self._outbox(read_ids, STATUS_READ)

    def _refresh_preview(self, key: str) -> None:
        items = self._store.messages(key)
        if key not in self._index:
            return
        if items:
            latest = items[-1]
            self._index.set_preview(key, preview_text(latest.body, latest.media_type))
        else:
            self._index.set_preview(key, "")
        self._changed("conversations", key)

    def _trim_early(self) -> None:
        while len(self._early_status) > EARLY_EVENT_LIMIT:
            self._early_status.pop(next(iter(self._early_status)))
        while len(self._early_deletions) > EARLY_EVENT_LIMIT:
            self._early_deletions.pop(next(iter(self._early_deletions)))

    def _changed(self, scope: str, key: str) -> None:
        for listener in list(self._listeners):
            listener(scope, key)

    @staticmethod
    def _require_key(identity: str) -> str:
        key = canonical_key(identity)
        if not key:
            raise ValueError(f"not a usable identity: {identity!r}")
        return key
