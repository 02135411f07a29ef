"""
Hostex API client — lists conversations and messages and posts replies.

A thin ``aiohttp`` wrapper: every request carries the static
``Hostex-Access-Token`` header, and both a non-2xx HTTP status and a
non-200 ``error_code`` in the response body are raised as
:class:`HostexAPIError` carrying the service's error message.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

logger = logging.getLogger("hostex_bridge.hostex_client")

_USER_AGENT = "HostexBridge/1.0"
_DEFAULT_TIMEOUT_SECONDS = 30.0
_OK_ERROR_CODE = 200


def _messages_path(conversation_id: str) -> str:
    return f"/conversations/{quote(conversation_id, safe='')}/messages"


class HostexAPIError(Exception):
    """A Hostex request failed at the HTTP or API level."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_code = error_code


class HostexTransportError(HostexAPIError):
    """The request never produced a usable response (network, timeout)."""


def parse_timestamp(value: Any) -> int:
    """Normalize an RFC3339 string or epoch number to epoch seconds.

    Missing or unparseable values map to ``0``.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
            return 0
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return 0


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass
class Guest:
    name: str = ""
    phone: str = ""
    email: str = ""


@dataclass
class Conversation:
    """Metadata for one Hostex guest conversation."""

    id: str
    channel_type: str = ""
    last_message_at: int = 0
    guest: Guest = field(default_factory=Guest)
    property_title: str = ""
    check_in_date: str = ""
    check_out_date: str = ""

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Conversation":
        guest = data.get("guest") or {}
        return cls(
            id=str(data["id"]),
            channel_type=data.get("channel_type") or "",
            last_message_at=parse_timestamp(data.get("last_message_at")),
            guest=Guest(
                name=guest.get("name") or "",
                phone=guest.get("phone") or "",
                email=guest.get("email") or "",
            ),
            property_title=data.get("property_title") or "",
            check_in_date=data.get("check_in_date") or "",
            check_out_date=data.get("check_out_date") or "",
        )


@dataclass
class Message:
    """One message in a Hostex conversation."""

    id: str
    content: str
    timestamp: int
    sender: str = ""

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data.get("id", "")),
            content=data.get("content") or "",
            timestamp=parse_timestamp(data.get("timestamp")),
            sender=data.get("sender") or "",
        )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HostexClient:
    """Async client for the Hostex conversations API.

    Usage::

        async with HostexClient(api_url, token) as hostex:
            conversations = await hostex.list_conversations()

    Args:
        base_url: API root, e.g. ``https://api.hostex.io/v3``.
        token: Static access token.
        session: Optional pre-built ``aiohttp.ClientSession`` (the client
                 will not close a session it did not create).
        timeout: Total per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "HostexClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Hostex-Access-Token": self._token,
            "User-Agent": _USER_AGENT,
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self._session is None:
            raise HostexTransportError("HostexClient used outside its context manager")

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(),
            ) as resp:
                if resp.status < 200 or resp.status >= 300:
                    raise HostexAPIError(
                        f"API request failed with status code: {resp.status}",
                        status=resp.status,
                    )
                body = await resp.json(content_type=None)
        except HostexAPIError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise HostexTransportError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise HostexAPIError(f"{method} {path} returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise HostexAPIError(f"{method} {path} returned an unexpected payload")

        error_code = body.get("error_code")
        if error_code != _OK_ERROR_CODE:
            raise HostexAPIError(
                f"API error: {body.get('error_msg') or 'unknown error'}",
                status=resp.status,
                error_code=error_code,
            )
        return body

    async def list_conversations(self) -> List[Conversation]:
        """Return every conversation currently visible to the token."""
        body = await self._request("GET", "/conversations")
        raw = (body.get("data") or {}).get("conversations") or []
        conversations = []
        for item in raw:
            if not isinstance(item, dict) or not item.get("id"):
                logger.debug("Skipping malformed conversation entry: %r", item)
                continue
            conversations.append(Conversation.from_json(item))
        return conversations

    async def list_messages(
        self,
        conversation_id: str,
        since: datetime,
        limit: int,
    ) -> List[Message]:
        """Return up to *limit* messages newer than *since*, oldest first."""
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        body = await self._request(
            "GET",
            _messages_path(conversation_id),
            params={
                "since": since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "limit": str(limit),
            },
        )
        raw = (body.get("data") or {}).get("messages") or []
        return [Message.from_json(item) for item in raw if isinstance(item, dict)]

    async def send_message(self, conversation_id: str, text: str) -> None:
        """Post *text* as a host reply into the conversation."""
        await self._request(
            "POST",
            _messages_path(conversation_id),
            payload={"message": text},
        )
        logger.debug("Sent message to Hostex conversation %s", conversation_id)
