"""
PostgreSQL persistence for portals, relayed messages, and user mappings.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), **never** string interpolation.

Every write is an upsert keyed by the table's primary key so concurrent
writers for the same key can never produce duplicate rows.  Nothing is
ever deleted; the ``message`` table is append-only and its
``MAX(timestamp)`` per conversation is the backfill cursor.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("hostex_bridge.portal_store")

_UPSERT_PORTAL_SQL = """
    INSERT INTO portal (conversation_id, room_id, name, topic, avatar_url, encrypted, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    ON CONFLICT (conversation_id)
    DO UPDATE SET
        room_id = EXCLUDED.room_id,
        name = EXCLUDED.name,
        topic = EXCLUDED.topic,
        avatar_url = EXCLUDED.avatar_url,
        encrypted = EXCLUDED.encrypted,
        updated_at = NOW()
"""

_INSERT_MESSAGE_SQL = """
    INSERT INTO message (conversation_id, event_id, timestamp, sender, body, delivered)
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (conversation_id, event_id) DO NOTHING
"""

_UPSERT_USER_SQL = """
    INSERT INTO bridge_user (user_id, remote_id)
    VALUES ($1, $2)
    ON CONFLICT (user_id)
    DO UPDATE SET remote_id = EXCLUDED.remote_id
"""


def _rowcount(status: str) -> int:
    # asyncpg command status format: "INSERT 0 <rowcount>"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError, IndexError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


class PortalStore:
    """Manages bridge persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Portals
    # ------------------------------------------------------------------

    async def put_portal(
        self,
        conversation_id: str,
        room_id: str,
        name: str = "",
        topic: str = "",
        avatar_url: str = "",
        encrypted: bool = False,
    ) -> None:
        """Insert or update the room pairing for a conversation."""
        await self._pool.execute(
            _UPSERT_PORTAL_SQL,
            conversation_id,
            room_id,
            name,
            topic,
            avatar_url,
            encrypted,
        )
        logger.debug("Stored portal %s -> %s", conversation_id, room_id)

    async def get_portal_room(self, conversation_id: str) -> Optional[str]:
        """Return the room id paired with *conversation_id*, if any."""
        room_id = await self._pool.fetchval(
            "SELECT room_id FROM portal WHERE conversation_id = $1",
            conversation_id,
        )
        return room_id or None

    async def get_portal_by_room(self, room_id: str) -> Optional[str]:
        """Reverse lookup: the conversation id bridged into *room_id*."""
        return await self._pool.fetchval(
            "SELECT conversation_id FROM portal WHERE room_id = $1",
            room_id,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def put_message(
        self,
        conversation_id: str,
        event_id: str,
        timestamp: int,
        sender: str,
        body: str,
        delivered: bool = True,
    ) -> bool:
        """Record a relayed message.

        Args:
            conversation_id: Hostex conversation the message belongs to.
            event_id: Matrix event id of the bridged message.
            timestamp: Authoritative message time in epoch seconds.
            sender: Free-text sender label.
            body: Message text.
            delivered: ``False`` when the outbound send to Hostex failed
                       and the row only records the attempt.

        Returns:
            ``True`` if a new row was written, ``False`` if the
            ``(conversation_id, event_id)`` pair was already stored.
        """
        status = await self._pool.execute(
            _INSERT_MESSAGE_SQL,
            conversation_id,
            event_id,
            int(timestamp),
            sender,
            body,
            delivered,
        )
        inserted = _rowcount(status) > 0
        if not inserted:
            logger.debug(
                "Message %s already stored for conversation %s",
                event_id,
                conversation_id,
            )
        return inserted

    async def get_last_message_timestamp(self, conversation_id: str) -> Optional[int]:
        """Return the newest stored message time (epoch seconds), or ``None``."""
        timestamp = await self._pool.fetchval(
            "SELECT MAX(timestamp) FROM message WHERE conversation_id = $1",
            conversation_id,
        )
        return int(timestamp) if timestamp is not None else None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def put_user_mapping(self, user_id: str, remote_id: str) -> None:
        """Associate a Matrix user with a Hostex identity (last write wins)."""
        await self._pool.execute(_UPSERT_USER_SQL, user_id, remote_id)

    async def get_user_mapping(self, user_id: str) -> Optional[str]:
        return await self._pool.fetchval(
            "SELECT remote_id FROM bridge_user WHERE user_id = $1",
            user_id,
        )

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_stats(self) -> Dict[str, Any]:
        """Return summary counts for monitoring."""
        async with self._pool.acquire() as conn:
            portals = await conn.fetchval(
                "SELECT COUNT(*) FROM portal WHERE room_id IS NOT NULL"
            )
            messages = await conn.fetchval("SELECT COUNT(*) FROM message")
            undelivered = await conn.fetchval(
                "SELECT COUNT(*) FROM message WHERE NOT delivered"
            )
        return {
            "portals": portals or 0,
            "messages": messages or 0,
            "undelivered": undelivered or 0,
        }
