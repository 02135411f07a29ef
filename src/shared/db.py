"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The bridge keeps three
tables of its own plus the shared ``audit_log``:

- ``portal``: conversation id to Matrix room id pairing.
- ``message``: every relayed message, used as the backfill cursor.
- ``bridge_user``: Matrix user to Hostex identity mapping.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS portal (
        conversation_id TEXT PRIMARY KEY,
        room_id         TEXT UNIQUE,
        name            TEXT,
        topic           TEXT,
        avatar_url      TEXT,
        encrypted       BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at      TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        conversation_id TEXT NOT NULL,
        event_id        TEXT NOT NULL UNIQUE,
        timestamp       BIGINT NOT NULL,
        sender          TEXT,
        body            TEXT,
        delivered       BOOLEAN NOT NULL DEFAULT TRUE,
        created_at      TIMESTAMPTZ DEFAULT NOW(),
        PRIMARY KEY (conversation_id, event_id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_conversation_ts
    ON message (conversation_id, timestamp DESC);
    """,
    """
    CREATE TABLE IF NOT EXISTS bridge_user (
        user_id   TEXT PRIMARY KEY,
        remote_id TEXT UNIQUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        conversation_id TEXT,
        details   JSONB,
        success   BOOLEAN NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_audit_conversation
    ON audit_log (conversation_id, timestamp DESC)
    WHERE conversation_id IS NOT NULL;
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, and optionally
                ``password``, ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=config.get("min_size", 1),
        max_size=config.get("max_size", 5),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host"),
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema ready")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
