"""
Portal — one Hostex conversation bridged into one Matrix room.

A portal owns the conversation id to room id pairing and the three
operations that keep the two sides consistent:

    - ``ensure_room``: adopt the stored room or create it exactly once.
    - ``backfill``: relay Hostex messages newer than the stored cursor.
    - ``relay_inbound``: forward a Matrix text message to Hostex.

The engine runs all three under the portal's own lock, so a manual ``!sync``
racing the timer poll cannot create a second room or relay a message twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hostex_bridge.hostex_client import Conversation, HostexClient, Message
from hostex_bridge.matrix_client import InboundEvent, MatrixChatClient
from hostex_bridge.portal_store import PortalStore

if TYPE_CHECKING:
    from shared.audit import AuditLogger

logger = logging.getLogger("hostex_bridge.portal")

BACKFILL_LIMIT = 10
SPACE_CHILD_EVENT = "m.space.child"


class PortalError(Exception):
    """A portal operation could not run (e.g. no conversation snapshot yet)."""


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return the zone for *name*, falling back to UTC if it is invalid."""
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.error("Invalid timezone %r; falling back to UTC", name)
        return timezone.utc


def localize(timestamp: int, tz: tzinfo) -> datetime:
    """Convert epoch seconds into an aware datetime in *tz*."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).astimezone(tz)


class Portal:
    """Keeps one Hostex conversation and one Matrix room in step.

    Args:
        conversation_id: Stable Hostex conversation id.
        store: Persistence store for portal and message rows.
        hostex: Hostex API client.
        matrix: Matrix chat client.
        tz: Display timezone for relayed message timestamps.
        admin_user_id: Invited into newly created rooms when set.
        space_room_id: Personal space new rooms are attached to, if any.
        homeserver_domain: ``via`` server for the space child event.
        audit: Optional audit logger.
    """

    def __init__(
        self,
        conversation_id: str,
        *,
        store: PortalStore,
        hostex: HostexClient,
        matrix: MatrixChatClient,
        tz: tzinfo = timezone.utc,
        admin_user_id: Optional[str] = None,
        space_room_id: Optional[str] = None,
        homeserver_domain: Optional[str] = None,
        audit: Optional["AuditLogger"] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.room_id: Optional[str] = None
        self.name = ""
        self.topic = ""
        self.avatar_url = ""
        self.encrypted = False
        self.info: Optional[Conversation] = None
        self.lock = asyncio.Lock()

        self._store = store
        self._hostex = hostex
        self._matrix = matrix
        self._tz = tz
        self._admin_user_id = admin_user_id
        self._space_room_id = space_room_id
        self._homeserver_domain = homeserver_domain
        self._audit = audit

    def __repr__(self) -> str:
        return f"<Portal conversation={self.conversation_id} room={self.room_id}>"

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def update_info(self, info: Conversation) -> None:
        """Replace the cached conversation snapshot."""
        self.info = info

    @property
    def guest_name(self) -> str:
        if self.info and self.info.guest.name:
            return self.info.guest.name
        return self.conversation_id

    @property
    def channel_type(self) -> str:
        return self.info.channel_type if self.info else ""

    @property
    def last_activity(self) -> Optional[datetime]:
        if self.info is None or not self.info.last_message_at:
            return None
        return localize(self.info.last_message_at, self._tz)

    def _room_name(self) -> str:
        if self.channel_type:
            return f"{self.channel_type} - {self.guest_name}"
        return self.guest_name

    def _room_topic(self) -> str:
        title = self.info.property_title if self.info else ""
        return f"Hostex conversation for {title}" if title else "Hostex conversation"

    # ------------------------------------------------------------------
    # Room lifecycle
    # ------------------------------------------------------------------

    async def ensure_room(self) -> bool:
        """Make sure this conversation has a Matrix room.

        Returns:
            ``True`` if a room was created by this call, ``False`` if one
            was already known (in memory or in the store).

        Raises:
            PortalError: If no conversation snapshot is available to name
                the room.
            Exception: Store lookup or room creation failures propagate so
                the caller can retry on the next poll.
        """
        if self.room_id:
            return False

        existing = await self._store.get_portal_room(self.conversation_id)
        if existing:
            self.room_id = existing
            logger.info(
                "Recovered room %s for conversation %s", existing, self.conversation_id
            )
            return False

        if self.info is None:
            raise PortalError(
                f"No conversation metadata for {self.conversation_id}; cannot create room"
            )

        name = self._room_name()
        topic = self._room_topic()
        invitees = [self._admin_user_id] if self._admin_user_id else []
        room_id = await self._matrix.create_room(name=name, topic=topic, invitees=invitees)
        self.room_id = room_id
        self.name = name
        self.topic = topic
        logger.info(
            "Created room %s for conversation %s (%s)", room_id, self.conversation_id, name
        )

        try:
            await self._store.put_portal(
                self.conversation_id,
                room_id,
                name=name,
                topic=topic,
                avatar_url=self.avatar_url,
                encrypted=self.encrypted,
            )
        except Exception:
            logger.exception(
                "Failed to store portal %s -> %s", self.conversation_id, room_id
            )

        if self._audit:
            await self._audit.log(
                "room_created",
                {"room_id": room_id, "name": name},
                success=True,
                conversation_id=self.conversation_id,
            )

        if self._space_room_id:
            await self._add_to_space()
        return True

    async def _add_to_space(self) -> None:
        via = [self._homeserver_domain] if self._homeserver_domain else []
        try:
            await self._matrix.write_room_state(
                self._space_room_id,
                SPACE_CHILD_EVENT,
                {"via": via},
                state_key=self.room_id,
            )
        except Exception:
            logger.error(
                "Failed to add room %s to personal space %s",
                self.room_id,
                self._space_room_id,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Hostex -> Matrix
    # ------------------------------------------------------------------

    async def backfill(self) -> int:
        """Relay Hostex messages newer than the stored cursor.

        Returns:
            Number of messages relayed into the room.
        """
        if not self.room_id:
            raise PortalError(f"Portal {self.conversation_id} has no room to backfill")

        cursor = await self._store.get_last_message_timestamp(self.conversation_id)
        since = datetime.fromtimestamp(cursor or 0, tz=timezone.utc)
        messages = await self._hostex.list_messages(
            self.conversation_id, since, BACKFILL_LIMIT
        )

        relayed = 0
        for msg in messages:
            if cursor is not None and msg.timestamp <= cursor:
                continue
            try:
                await self.relay_remote(msg)
            except Exception:
                logger.exception(
                    "Failed to relay Hostex message %s into %s", msg.id, self.room_id
                )
                if self._audit:
                    await self._audit.log(
                        "relay_failed",
                        {"direction": "hostex_to_matrix", "message_id": msg.id},
                        success=False,
                        conversation_id=self.conversation_id,
                    )
                continue
            relayed += 1

        if relayed:
            logger.info(
                "Backfilled %d message(s) into %s for conversation %s",
                relayed,
                self.room_id,
                self.conversation_id,
            )
        return relayed

    async def relay_remote(self, msg: Message) -> str:
        """Send one Hostex message into the room and record it."""
        sent_at = localize(msg.timestamp, self._tz)
        event_id = await self._matrix.send_message(
            self.room_id,
            msg.content,
            timestamp_ms=int(sent_at.timestamp() * 1000),
        )
        sender = msg.sender or self.guest_name
        try:
            await self._store.put_message(
                self.conversation_id, event_id, msg.timestamp, sender, msg.content
            )
        except Exception:
            logger.exception(
                "Failed to store relayed message %s for %s", event_id, self.conversation_id
            )
        return event_id

    # ------------------------------------------------------------------
    # Matrix -> Hostex
    # ------------------------------------------------------------------

    async def relay_inbound(self, event: InboundEvent) -> bool:
        """Forward a Matrix text message to Hostex.

        A failed send is logged and dropped without retry; the message row
        is still written with ``delivered=False``.

        Returns:
            ``True`` if Hostex accepted the message.
        """
        if not event.is_text or not event.body:
            logger.debug("Ignoring non-text event %s in %s", event.event_id, event.room_id)
            return False

        delivered = True
        try:
            await self._hostex.send_message(self.conversation_id, event.body)
        except Exception:
            delivered = False
            logger.error(
                "Failed to send message %s to Hostex conversation %s",
                event.event_id,
                self.conversation_id,
                exc_info=True,
            )
            if self._audit:
                await self._audit.log(
                    "relay_failed",
                    {"direction": "matrix_to_hostex", "event_id": event.event_id},
                    success=False,
                    conversation_id=self.conversation_id,
                )

        # Stamped after the Hostex call returns: Hostex's copy of the reply
        # must not sort after the backfill cursor.
        recorded_at = int(time.time())

        try:
            await self._store.put_message(
                self.conversation_id,
                event.event_id,
                recorded_at,
                event.sender,
                event.body,
                delivered=delivered,
            )
        except Exception:
            logger.exception(
                "Failed to store message %s for %s", event.event_id, self.conversation_id
            )
        return delivered
