"""aiohttp client for the REST operations the sync engine consumes."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from inbox_sync.identity import digits_only

logger = logging.getLogger(__name__)


class BackendError(Exception):
    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None) -> None:
        self.status = status
        self.code = code
        super().__init__(message)


class SendRejected(BackendError):
    """The backend answered the send request but refused the message."""


@dataclass(frozen=True)
class MediaAttachment:
    content: bytes
    filename: str
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class SendReceipt:
    message_id: str
    status: str
    body: str = ""


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout_s: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url
        self._headers = dict(headers or {})
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, object]] = None,
        data: Optional[aiohttp.FormData] = None,
    ) -> Any:
        url = _build_url(self.base_url, path)
        try:
            async with self._client().request(
                method, url, json=json_body, data=data, headers=self._headers
            ) as response:
                raw = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise BackendError(f"{method} {path} returned malformed json", status=status) from exc

        if status >= 400:
            code = payload.get("code") if isinstance(payload, dict) else None
            raise BackendError(
                _error_message(payload, f"{method} {path} returned HTTP {status}"),
                status=status,
                code=code if isinstance(code, str) else None,
            )
        return payload

    async def list_conversations(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/conversations")
        items = payload.get("conversations", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise BackendError("conversation list has unexpected shape")
        return [item for item in items if isinstance(item, dict)]

    async def list_messages(self, identity: str) -> List[Dict[str, Any]]:
        number = urllib.parse.quote(digits_only(identity))
        payload = await self._request("GET", f"/sms/messages/{number}")
        if not isinstance(payload, dict) or payload.get("success") is False:
            raise BackendError(_error_message(payload, "message history unavailable"))
        items = payload.get("messages") or []
        if not isinstance(items, list):
            raise BackendError("message history has unexpected shape")
        return [item for item in items if isinstance(item, dict)]

    async def send_message(
        self,
        to_number: str,
        body: str,
        *,
        from_number: str,
        media: Optional[MediaAttachment] = None,
    ) -> SendReceipt:
        if media is None:
            payload = await self._request(
                "POST",
                "/sms/send",
                json_body={"toNumber": to_number, "message": body, "fromNumber": from_number},
            )
        else:
            form = aiohttp.FormData()
            form.add_field("mediaFile", media.content, filename=media.filename, content_type=media.content_type)
            form.add_field("toNumber", to_number)
            form.add_field("fromNumber", from_number)
            if body:
                form.add_field("message", body)
            payload = await self._request("POST", "/sms/send-media", data=form)

        if not isinstance(payload, dict) or not payload.get("success"):
            raise SendRejected(_error_message(payload, "Failed to send"))
        sid = payload.get("sid")
        status = payload.get("messageStatus")
        return SendReceipt(
            message_id=str(sid) if sid else "",
            status=str(status) if status else "sent",
            body=str(payload.get("messageBody") or body),
        )

    async def mark_read(self, identity: str) -> Dict[str, Any]:
        return await self._request("POST", "/conversations/mark-read", json_body={"contactNumber": identity})

    async def update_message_status(self, message_ids: List[str], status: str) -> Dict[str, Any]:
        if not status or not message_ids:
            return {}
        return await self._request(
            "POST",
            "/messages/status-update",
            json_body={"sids": list(message_ids), "status": status},
        )

    async def delete_message(self, message_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/messages/delete", json_body={"messageSid": message_id})

    async def fetch_presence(self, identity: str) -> Dict[str, Any]:
        number = urllib.parse.quote(digits_only(identity))
        payload = await self._request("GET", f"/presence/{number}")
        return payload if isinstance(payload, dict) else {}

    async def delete_conversations(self, numbers: List[str]) -> Dict[str, Any]:
        return await self._request("POST", "/conversations/delete", json_body={"numbers": list(numbers)})

    async def clear_messages(self, number: str) -> Dict[str, Any]:
        return await self._request("POST", "/sms/messages/clear", json_body={"number": number})

    async def list_sender_numbers(self) -> List[str]:
        payload = await self._request("GET", "/from-numbers")
        items = payload if isinstance(payload, list) else []
        numbers: List[str] = []
        for item in items:
            if isinstance(item, dict) and item.get("phoneNumber"):
                numbers.append(str(item["phoneNumber"]))
            elif isinstance(item, str) and item:
                numbers.append(item)
        return numbers
