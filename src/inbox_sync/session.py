"""Process-scoped sync session: owns the engine and performs all I/O around it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, List, Optional, Set, Tuple

from inbox_sync.backend import BackendClient, BackendError, MediaAttachment
from inbox_sync.channel import PushChannel
from inbox_sync.config import SyncConfig
from inbox_sync.engine import TAB_ALL, ReconciliationEngine
from inbox_sync.events import Event, MessageDeleted, parse_frame
from inbox_sync.identity import canonical_key, to_transport_address
from inbox_sync.local_cache import forget_conversation, load_local_conversations, remember_conversation
from inbox_sync.normalize import parse_timestamp
from inbox_sync.presence import PresenceTracker, TypingDebouncer, _now_ms
from inbox_sync.records import STATUS_FAILED, Conversation, Message, PresenceState

logger = logging.getLogger(__name__)

NOTICE_FETCH_FAILED = "fetch_failed"
NOTICE_SEND_FAILED = "send_failed"
NOTICE_ACTION_FAILED = "action_failed"


@dataclass(frozen=True)
class Notice:
    kind: str
    message: str
    identity: str = ""


NoticeListener = Callable[[Notice], None]


class SyncSession:
    def __init__(
        self,
        config: SyncConfig,
        *,
        backend: BackendClient | None = None,
        channel: PushChannel | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config
        self.presence = PresenceTracker(
            config.typing_window_ms,
            now_func=now_func,
            sweeper_interval_seconds=config.sweeper_interval_seconds,
        )
        self.engine = ReconciliationEngine(config.own_number, presence=self.presence)
        self.engine.set_outbox(self._schedule_status_sync)
        self.backend = backend or BackendClient(
            config.api_base_url,
            headers=config.auth_headers(),
            timeout_s=config.request_timeout_s,
        )
        self.channel = channel or PushChannel(
            config.ws_url,
            auth_token=config.auth_token,
            own_number=config.own_number,
            backoff_max_s=config.reconnect_backoff_max_s,
        )
        self.typing = TypingDebouncer(self._emit_typing, config.typing_window_ms, now_func=now_func)
        self.presence.add_tick_hook(self.typing.tick)
        self._notice_listeners: List[NoticeListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._presence_poll: asyncio.Task | None = None
        self._closed = False

    async def __aenter__(self) -> "SyncSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # notices

    def add_notice_listener(self, listener: NoticeListener) -> None:
        self._notice_listeners.append(listener)

    def _notice(self, kind: str, message: str, identity: str = "") -> None:
        notice = Notice(kind=kind, message=message, identity=identity)
        for listener in list(self._notice_listeners):
            listener(notice)

    # views

    def conversations(self, tab: str = TAB_ALL, search: str = "") -> Tuple[Conversation, ...]:
        return self.engine.filter_conversations(tab, search)

    def messages(self, identity: Optional[str] = None) -> Tuple[Message, ...]:
        key = identity or self.engine.focused_key
        if not key:
            return ()
        return self.engine.messages(key)

    def presence_of(self, identity: str) -> PresenceState:
        return self.presence.lookup(identity)

    def total_unread(self) -> int:
        return self.engine.total_unread()

    # lifecycle

    async def start(self) -> Tuple[Conversation, ...]:
        """Load the conversation snapshot and merge the local cache into it."""

        self.presence.start_sweeper()
        try:
            server = await self.backend.list_conversations()
        except BackendError as exc:
            logger.warning("conversation snapshot failed: %s", exc)
            self._notice(NOTICE_FETCH_FAILED, f"Could not load conversations: {exc}")
            return self.engine.conversations()
        local = load_local_conversations(self.config.cache_path)
        return self.engine.load_snapshot(server, local)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.typing.flush()
        self._stop_presence_poll()
        await self.presence.stop_sweeper()
        await self.channel.close()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.presence.clear()
        await self.backend.close()
        logger.info("sync session closed")

    # push events

    def ingest(self, frame: object) -> Optional[Event]:
        event = parse_frame(frame, self.config.own_number)
        if event is None:
            return None
        self.engine.dispatch(event)
        return event

    async def run_channel(self) -> None:
        async for frame in self.channel.frames():
            self.ingest(frame)

    # conversation actions

    async def focus_conversation(self, identity: Optional[str]) -> Tuple[Message, ...]:
        previous = self.engine.focused_key
        self.typing.flush()
        key = self.engine.focus(identity)
        if previous and previous != key:
            self.presence.unsubscribe(previous)
            self._spawn(self.channel.unsubscribe_presence(previous))
            self._stop_presence_poll()
        if key is None or identity is None:
            return ()

        if previous != key:
            self._watch_presence(identity)

        try:
            raws = await self.backend.list_messages(identity)
        except BackendError as exc:
            logger.warning("history fetch for %s failed: %s", key, exc)
            self._notice(NOTICE_FETCH_FAILED, f"Could not load messages: {exc}", identity=key)
        else:
            self.engine.apply_history(identity, raws)

        await self._mark_read(identity)
        return self.engine.messages(key)

    async def _mark_read(self, identity: str) -> None:
        try:
            await self.backend.mark_read(identity)
        except BackendError as exc:
            logger.warning("mark-read for %s failed: %s", canonical_key(identity), exc)
            return
        self.engine.acknowledge_read(identity)

    async def send(self, body: str, media: Optional[MediaAttachment] = None) -> Optional[Message]:
        """Send to the focused conversation, optimistically.

        The pending record is visible immediately; it is renamed to the
        backend id on success and rolled back on rejection.
        """

        key = self.engine.focused_key
        if not key:
            raise ValueError("no conversation is focused")
        if not body.strip() and media is None:
            return None
        entry = self.engine.conversation(key)
        number = entry.number if entry is not None else key
        history = self.engine.messages(key)
        channel = history[-1].channel if history else self.config.default_channel
        self.typing.flush()

        temp = self.engine.begin_send(
            number,
            body,
            media_url=f"local:{media.filename}" if media is not None else None,
            media_type=media.content_type if media is not None else None,
            channel=channel,
        )
        try:
            receipt = await self.backend.send_message(
                to_transport_address(number, channel, self.config.default_country_code),
                body,
                from_number=to_transport_address(self.config.own_number, channel, self.config.default_country_code),
                media=media,
            )
        except BackendError as exc:
            self.engine.fail_send(temp.id, hard=True, error=str(exc))
            self._notice(NOTICE_SEND_FAILED, f"Failed to send: {exc}", identity=key)
            return None

        message = self.engine.confirm_send(temp.id, receipt.message_id, receipt.status)
        if message is None:
            return None
        if message.status == STATUS_FAILED:
            self._notice(NOTICE_SEND_FAILED, "Message was not delivered", identity=key)
        elif self.engine.is_confirmed(message.id):
            self._schedule_status_sync([message.id], message.status)
        return message

    def start_typing(self) -> bool:
        key = self.engine.focused_key
        if not key:
            return False
        return self.typing.input_activity(key)

    def stop_typing(self) -> bool:
        return self.typing.flush()

    def delete_locally(self, message_id: str) -> Message:
        return self.engine.delete_locally(message_id)

    async def request_delete_for_everyone(self, message_id: str) -> bool:
        message = self.engine.require_deletable(message_id)
        try:
            await self.backend.delete_message(message_id)
        except BackendError as exc:
            logger.warning("delete of %s failed: %s", message_id, exc)
            self._notice(NOTICE_ACTION_FAILED, f"Could not delete message: {exc}", identity=message.conversation_key)
            return False
        self.engine.dispatch(MessageDeleted(message_id=message_id, identity=message.counterpart))
        return True

    async def clear_conversation(self, identity: str) -> bool:
        try:
            await self.backend.clear_messages(identity)
        except BackendError as exc:
            logger.warning("clear of %s failed: %s", canonical_key(identity), exc)
            self._notice(NOTICE_ACTION_FAILED, f"Could not clear chat: {exc}", identity=canonical_key(identity))
            return False
        self.engine.clear_conversation(identity)
        return True

    async def delete_conversation(self, identity: str) -> bool:
        key = canonical_key(identity)
        entry = self.engine.conversation(identity)
        number = entry.number if entry is not None else identity
        try:
            await self.backend.delete_conversations([number])
        except BackendError as exc:
            logger.warning("delete of conversation %s failed: %s", key, exc)
            self._notice(NOTICE_ACTION_FAILED, f"Could not delete conversation: {exc}", identity=key)
            return False
        if self.engine.focused_key == key:
            self.typing.flush()
            self.presence.unsubscribe(key)
            self._stop_presence_poll()
        self.engine.remove_conversation(identity)
        forget_conversation(number, self.config.cache_path)
        return True

    def start_conversation(self, number: str, name: str = "") -> Conversation:
        entry = self.engine.start_conversation(number, name)
        remember_conversation(entry, self.config.cache_path)
        return entry

    async def sender_numbers(self) -> List[str]:
        try:
            numbers = await self.backend.list_sender_numbers()
        except BackendError as exc:
            logger.warning("sender number lookup failed: %s", exc)
            numbers = []
        return numbers or [self.config.own_number]

    # background work

    def _spawn(self, coro: Coroutine[Any, Any, object]) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("no running event loop; dropping background call")
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_status_sync(self, message_ids: List[str], status: str) -> None:
        if self._closed:
            return
        self._spawn(self._sync_status(list(message_ids), status))

    async def _sync_status(self, message_ids: List[str], status: str) -> None:
        try:
            await self.backend.update_message_status(message_ids, status)
        except BackendError as exc:
            logger.warning("status sync (%s) for %d message(s) failed: %s", status, len(message_ids), exc)

    def _emit_typing(self, key: str, typing: bool) -> None:
        if self._closed and typing:
            return
        self._spawn(self.channel.send_typing(key, typing))

    def _watch_presence(self, identity: str) -> None:
        self.presence.subscribe(identity)
        # The channel remembers the watch and replays it after a reconnect.
        self._spawn(self.channel.subscribe_presence(identity))
        if not self.channel.connected:
            self._presence_poll = self._spawn(self._poll_presence(identity))

    def _stop_presence_poll(self) -> None:
        task, self._presence_poll = self._presence_poll, None
        if task is not None and not task.done():
            task.cancel()

    async def _poll_presence(self, identity: str) -> None:
        key = canonical_key(identity)
        while self.engine.focused_key == key and not self.channel.connected:
            try:
                payload = await self.backend.fetch_presence(identity)
            except BackendError as exc:
                logger.warning("presence lookup for %s failed: %s", key, exc)
            else:
                if self.engine.focused_key == key:
                    self.presence.on_presence(
                        identity,
                        bool(payload.get("online")),
                        parse_timestamp(payload.get("lastSeen", payload.get("last_seen"))),
                    )
            await asyncio.sleep(self.config.presence_poll_seconds)
