from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from inbox_sync.identity import canonical_key
from inbox_sync.records import PresenceState

logger = logging.getLogger(__name__)

DEFAULT_TYPING_WINDOW_MS = 2000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


@dataclass
class _Entry:
    online: bool = False
    last_seen_at: Optional[datetime] = None
    typing_refreshed_ms: Optional[int] = None


Listener = Callable[[PresenceState], None]


class PresenceTracker:
    """Ephemeral online/last-seen/typing state keyed by canonical identity.

    Nothing here is persisted and nothing here is consulted by message
    reconciliation. A typing flag reads as false once ``window_ms`` has
    elapsed since its last refresh, with or without an explicit stop.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_TYPING_WINDOW_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
        sweeper_interval_seconds: float = 0.5,
    ) -> None:
        self.window_ms = window_ms
        self.sweeper_interval_seconds = sweeper_interval_seconds
        self._now = now_func
        self._entries: Dict[str, _Entry] = {}
        self._listeners: List[Listener] = []
        self._tick_hooks: List[Callable[[], object]] = []
        self._sweeper_task: asyncio.Task | None = None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def add_tick_hook(self, hook: Callable[[], object]) -> None:
        self._tick_hooks.append(hook)

    def subscribe(self, identity: str) -> bool:
        """Open a watch on ``identity``; returns False if already watched."""

        key = canonical_key(identity)
        if not key:
            return False
        if key in self._entries:
            return False
        self._entries[key] = _Entry()
        return True

    def unsubscribe(self, identity: str) -> None:
        self._entries.pop(canonical_key(identity), None)

    def subscribed(self) -> List[str]:
        return sorted(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()

    def on_presence(self, identity: str, online: bool, last_seen_at: Optional[datetime] = None) -> None:
        key = canonical_key(identity)
        if not key:
            logger.debug("ignoring presence for unusable identity %r", identity)
            return
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("ignoring presence for unwatched %s", key)
            return
        entry.online = bool(online)
        if last_seen_at is not None:
            entry.last_seen_at = last_seen_at
        elif not online:
            entry.last_seen_at = _from_ms(self._now())
        if not online:
            entry.typing_refreshed_ms = None
        self._notify(key)

    def on_typing(self, identity: str, typing: bool) -> None:
        key = canonical_key(identity)
        if not key:
            logger.debug("ignoring typing for unusable identity %r", identity)
            return
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("ignoring typing for unwatched %s", key)
            return
        entry.typing_refreshed_ms = self._now() if typing else None
        self._notify(key)

    def lookup(self, identity: str) -> PresenceState:
        key = canonical_key(identity)
        entry = self._entries.get(key)
        if entry is None:
            return PresenceState(key=key)
        return PresenceState(
            key=key,
            online=entry.online,
            last_seen_at=entry.last_seen_at,
            typing=self._typing_active(entry),
        )

    def is_typing(self, identity: str) -> bool:
        return self.lookup(identity).typing

    def expire(self) -> List[str]:
        """Drop typing flags whose window has elapsed; return their keys."""

        expired: List[str] = []
        for key, entry in self._entries.items():
            if entry.typing_refreshed_ms is not None and not self._typing_active(entry):
                entry.typing_refreshed_ms = None
                expired.append(key)
        for key in expired:
            self._notify(key)
        return expired

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweeper_interval_seconds)
                self.expire()
                for hook in self._tick_hooks:
                    hook()
        except asyncio.CancelledError:
            return

    def _typing_active(self, entry: _Entry) -> bool:
        if entry.typing_refreshed_ms is None:
            return False
        return self._now() - entry.typing_refreshed_ms < self.window_ms

    def _notify(self, key: str) -> None:
        state = self.lookup(key)
        for listener in list(self._listeners):
            listener(state)


class TypingDebouncer:
    """Local typing broadcast: one start per burst, stop after a quiet window."""

    def __init__(
        self,
        emit: Callable[[str, bool], object],
        window_ms: int = DEFAULT_TYPING_WINDOW_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.window_ms = window_ms
        self._emit = emit
        self._now = now_func
        self._target: Optional[str] = None
        self._last_input_ms = 0

    @property
    def active(self) -> bool:
        return self._target is not None

    def input_activity(self, identity: str) -> bool:
        """Record a keystroke; returns True when a start signal was emitted."""

        key = canonical_key(identity)
        if not key:
            return False
        if self._target is not None and self._target != key:
            self.flush()
        self._last_input_ms = self._now()
        if self._target is None:
            self._target = key
            self._emit(key, True)
            return True
        return False

    def tick(self) -> bool:
        if self._target is None:
            return False
        if self._now() - self._last_input_ms < self.window_ms:
            return False
        return self.flush()

    def flush(self) -> bool:
        if self._target is None:
            return False
        target, self._target = self._target, None
        self._emit(target, False)
        return True
