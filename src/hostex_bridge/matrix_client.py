"""
Matrix chat client — the bridge's only window onto the chat network.

Wraps a ``mautrix`` :class:`~mautrix.client.Client` and exposes just the
operations the bridge needs: login, room discovery and creation, state
event read/write, message send, and a raw ``/sync`` call that is turned
into a list of :class:`InboundEvent` objects.

The sync loop itself lives in the engine; this module only parses each
``/sync`` payload so the engine can apply its own backoff and
cancellation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from mautrix.client import Client
from mautrix.errors import MNotFound, MUnknownToken
from mautrix.types import (
    EventType,
    MessageType,
    RoomCreatePreset,
    RoomDirectoryVisibility,
    TextMessageEventContent,
    UserID,
)

from shared.secrets import load_session, save_session

logger = logging.getLogger("hostex_bridge.matrix_client")

ROOM_MESSAGE = "m.room.message"
TEXT_MSGTYPE = "m.text"
SPACE_ROOM_TYPE = "m.space"

_STATE_EVENT_TYPES = {
    "m.room.name": EventType.ROOM_NAME,
    "m.room.topic": EventType.ROOM_TOPIC,
    "m.room.create": EventType.ROOM_CREATE,
    "m.space.child": EventType.SPACE_CHILD,
    "m.space.parent": EventType.SPACE_PARENT,
}


@dataclass(frozen=True)
class InboundEvent:
    """A message event received from the chat network."""

    room_id: str
    event_id: str
    sender: str
    body: str
    timestamp: int
    event_type: str = ROOM_MESSAGE
    msgtype: str = TEXT_MSGTYPE

    @property
    def is_text(self) -> bool:
        return self.event_type == ROOM_MESSAGE and self.msgtype == TEXT_MSGTYPE


# ---------------------------------------------------------------------------
# Sync payload parsing
# ---------------------------------------------------------------------------


def extract_next_batch(payload: Dict[str, Any], fallback: Optional[str] = None) -> Optional[str]:
    """Return the ``next_batch`` token of a sync response."""
    token = payload.get("next_batch")
    if isinstance(token, str) and token:
        return token
    return fallback


def iter_message_events(
    payload: Dict[str, Any],
    own_user_id: Optional[str] = None,
) -> Iterator[InboundEvent]:
    """Yield ``m.room.message`` events from the joined rooms of a sync.

    Events sent by *own_user_id* are skipped so messages the bridge
    posted itself are never relayed back.
    """
    rooms = payload.get("rooms")
    if not isinstance(rooms, dict):
        return
    joined = rooms.get("join")
    if not isinstance(joined, dict):
        return

    for room_id, room in joined.items():
        if not isinstance(room, dict):
            continue
        timeline = room.get("timeline")
        if not isinstance(timeline, dict):
            continue
        for event in timeline.get("events") or []:
            if not isinstance(event, dict) or event.get("type") != ROOM_MESSAGE:
                continue
            sender = event.get("sender")
            event_id = event.get("event_id")
            if not isinstance(sender, str) or not isinstance(event_id, str):
                continue
            if own_user_id and sender == own_user_id:
                continue
            content = event.get("content")
            if not isinstance(content, dict):
                continue
            body = content.get("body")
            ts_ms = event.get("origin_server_ts")
            yield InboundEvent(
                room_id=room_id,
                event_id=event_id,
                sender=sender,
                body=body if isinstance(body, str) else "",
                timestamp=int(ts_ms) // 1000 if isinstance(ts_ms, int) else 0,
                event_type=ROOM_MESSAGE,
                msgtype=str(content.get("msgtype") or ""),
            )


def _state_event_type(event_type: str) -> EventType:
    known = _STATE_EVENT_TYPES.get(event_type)
    if known is not None:
        return known
    return EventType.find(event_type, t_class=EventType.Class.STATE)


def _content_to_dict(content: Any) -> Dict[str, Any]:
    if content is None:
        return {}
    if hasattr(content, "serialize"):
        return content.serialize()
    return dict(content)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MatrixChatClient:
    """Bridge-facing wrapper around a ``mautrix`` client.

    Usage::

        async with MatrixChatClient(homeserver, user_id, password) as matrix:
            await matrix.login()
            room_id = await matrix.create_room("name", "topic")

    Args:
        homeserver: Base URL of the homeserver.
        user_id: Full Matrix user id of the bridge account.
        password: Password used when no cached session is usable.
        device_id: Device id requested at login.
        session_path: Optional encrypted credential cache file.
        session_key: Fernet key for *session_path*.
    """

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        password: str,
        device_id: str = "HostexBridge",
        session_path: Optional[Path] = None,
        session_key: Optional[str] = None,
    ) -> None:
        self._homeserver = homeserver
        self._user_id = user_id
        self._password = password
        self._device_id = device_id
        self._session_path = Path(session_path) if session_path else None
        self._session_key = session_key
        self._client: Optional[Client] = None

    async def __aenter__(self) -> "MatrixChatClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _ensure_client(self) -> Client:
        if self._client is None:
            self._client = Client(
                mxid=UserID(self._user_id),
                device_id=self._device_id,
                base_url=self._homeserver,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.api.session.close()
            self._client = None
            logger.info("Matrix client closed.")

    @property
    def user_id(self) -> str:
        return self._user_id

    # ----- session ---------------------------------------------------------

    async def _restore_session(self, client: Client) -> bool:
        if not (self._session_path and self._session_key):
            return False
        session = load_session(self._session_path, self._session_key)
        if not session or not session.get("access_token"):
            return False

        client.api.token = session["access_token"]
        client.device_id = session.get("device_id") or self._device_id
        try:
            whoami = await client.whoami()
        except MUnknownToken:
            logger.warning("Cached Matrix session was rejected; logging in again")
            client.api.token = ""
            return False

        self._user_id = str(whoami.user_id)
        client.mxid = whoami.user_id
        logger.info("Restored Matrix session for %s (device %s)", self._user_id, client.device_id)
        return True

    async def login(self) -> str:
        """Establish a session, reusing the cached token when possible.

        Returns:
            The logged-in Matrix user id.

        Raises:
            mautrix.errors.MatrixError: If the password login fails.
        """
        client = self._ensure_client()
        if await self._restore_session(client):
            return self._user_id

        resp = await client.login(
            identifier=self._user_id,
            password=self._password,
            device_id=self._device_id,
            store_access_token=True,
        )
        self._user_id = str(resp.user_id)
        logger.info("Logged in to Matrix as %s (device %s)", resp.user_id, resp.device_id)

        if self._session_path and self._session_key:
            try:
                save_session(
                    self._session_path,
                    {"access_token": resp.access_token, "device_id": str(resp.device_id)},
                    self._session_key,
                )
            except OSError:
                logger.exception("Failed to write Matrix session cache")
        return self._user_id

    # ----- rooms -----------------------------------------------------------

    async def joined_rooms(self) -> List[str]:
        client = self._ensure_client()
        return [str(room_id) for room_id in await client.get_joined_rooms()]

    async def create_room(
        self,
        name: str,
        topic: str = "",
        invitees: Optional[List[str]] = None,
        is_space: bool = False,
    ) -> str:
        """Create a private room (or space) and return its id."""
        client = self._ensure_client()
        room_id = await client.create_room(
            visibility=RoomDirectoryVisibility.PRIVATE,
            preset=RoomCreatePreset.PRIVATE,
            name=name,
            topic=topic or None,
            invitees=[UserID(user) for user in invitees or []],
            creation_content={"type": SPACE_ROOM_TYPE} if is_space else None,
        )
        logger.debug("Created room %s (%s)", room_id, name)
        return str(room_id)

    async def read_room_state(
        self,
        room_id: str,
        event_type: str,
        state_key: str = "",
    ) -> Optional[Dict[str, Any]]:
        """Return a state event's content, or ``None`` if it is unset."""
        client = self._ensure_client()
        try:
            content = await client.get_state_event(
                room_id, _state_event_type(event_type), state_key=state_key
            )
        except MNotFound:
            return None
        return _content_to_dict(content)

    async def write_room_state(
        self,
        room_id: str,
        event_type: str,
        content: Dict[str, Any],
        state_key: str = "",
    ) -> str:
        client = self._ensure_client()
        event_id = await client.send_state_event(
            room_id, _state_event_type(event_type), content, state_key=state_key
        )
        return str(event_id)

    # ----- messages --------------------------------------------------------

    async def send_message(
        self,
        room_id: str,
        body: str,
        msgtype: str = TEXT_MSGTYPE,
        timestamp_ms: Optional[int] = None,
    ) -> str:
        """Send a plain-text message and return its event id.

        ``timestamp_ms`` is passed as the ``ts`` query parameter, which
        homeservers honour for appservice senders.
        """
        client = self._ensure_client()
        content = TextMessageEventContent(msgtype=MessageType(msgtype), body=body)
        kwargs: Dict[str, Any] = {}
        if timestamp_ms is not None:
            kwargs["query_params"] = {"ts": str(int(timestamp_ms))}
        event_id = await client.send_message_event(
            room_id, EventType.ROOM_MESSAGE, content, **kwargs
        )
        return str(event_id)

    async def send_notice(self, room_id: str, body: str) -> str:
        return await self.send_message(room_id, body, msgtype=MessageType.NOTICE.value)

    # ----- sync ------------------------------------------------------------

    async def sync(
        self,
        since: Optional[str],
        timeout_ms: int = 30000,
    ) -> Tuple[Optional[str], List[InboundEvent]]:
        """Run one ``/sync`` long-poll.

        Returns:
            ``(next_batch, events)`` where *events* excludes the bridge's
            own messages.
        """
        client = self._ensure_client()
        payload = await client.sync(since=since, timeout=timeout_ms)
        if not isinstance(payload, dict):
            return since, []
        return (
            extract_next_batch(payload, fallback=since),
            list(iter_message_events(payload, own_user_id=self._user_id)),
        )
