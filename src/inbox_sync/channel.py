from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Set

import aiohttp

from inbox_sync.identity import canonical_key, digits_only

logger = logging.getLogger(__name__)

FRAME_VERSION = 1


def build_frame(kind: str, body: Dict[str, object]) -> Dict[str, object]:
    return {"v": FRAME_VERSION, "t": kind, "body": body}


class PushChannel:
    """Websocket push channel that reconnects with capped exponential backoff.

    Presence watches survive reconnects: every new socket re-registers the
    account and re-subscribes the identities that were being watched.
    """

    def __init__(
        self,
        ws_url: str,
        *,
        auth_token: str = "",
        own_number: str = "",
        heartbeat: float = 20.0,
        backoff_initial_s: float = 0.5,
        backoff_max_s: float = 5.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.auth_token = auth_token
        self.own_number = own_number
        self.heartbeat = heartbeat
        self.backoff_initial_s = backoff_initial_s
        self.backoff_max_s = backoff_max_s
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._watched: Set[str] = set()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def watched(self) -> List[str]:
        return sorted(self._watched)

    async def connect(self) -> None:
        if self.connected:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        headers = {"Authorization": f"Bearer {self.auth_token}"} if self.auth_token else None
        self._ws = await self._session.ws_connect(self.ws_url, heartbeat=self.heartbeat, headers=headers)
        logger.info("push channel connected to %s", self.ws_url)
        await self.register()
        for key in sorted(self._watched):
            await self.send_frame("presence_subscribe", {"number": key})

    async def frames(self) -> AsyncIterator[str]:
        """Yield raw text frames until ``close()``; reconnects on any drop."""

        backoff_s = self.backoff_initial_s
        while not self._closed:
            try:
                await self.connect()
                backoff_s = self.backoff_initial_s
                assert self._ws is not None
                async for msg in self._ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        yield msg.data
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        yield msg.data.decode("utf-8", errors="replace")
                    elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                logger.warning("push channel error: %s", exc)
            await self._drop_socket()
            if self._closed:
                break
            logger.info("push channel reconnecting in %.1fs", backoff_s)
            await asyncio.sleep(backoff_s)
            backoff_s = min(backoff_s * 2, self.backoff_max_s)

    async def send_frame(self, kind: str, body: Dict[str, object]) -> bool:
        if not self.connected:
            logger.debug("push channel offline; not sending %s", kind)
            return False
        assert self._ws is not None
        try:
            await self._ws.send_json(build_frame(kind, body))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            logger.warning("failed to send %s frame: %s", kind, exc)
            return False
        return True

    async def register(self) -> bool:
        body: Dict[str, object] = {"number": digits_only(self.own_number)}
        if self.auth_token:
            body["auth_token"] = self.auth_token
        return await self.send_frame("register", body)

    async def subscribe_presence(self, identity: str) -> bool:
        key = canonical_key(identity)
        if not key:
            return False
        self._watched.add(key)
        return await self.send_frame("presence_subscribe", {"number": key})

    async def unsubscribe_presence(self, identity: str) -> bool:
        key = canonical_key(identity)
        if key not in self._watched:
            return False
        self._watched.discard(key)
        return await self.send_frame("presence_unsubscribe", {"number": key})

    async def send_typing(self, identity: str, typing: bool) -> bool:
        key = canonical_key(identity)
        if not key:
            return False
        return await self.send_frame("typing", {"number": key, "typing": bool(typing)})

    async def close(self) -> None:
        self._closed = True
        await self._drop_socket()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("push channel closed")

    async def _drop_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()