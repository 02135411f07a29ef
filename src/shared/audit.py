"""
Structured audit logging — records bridge events in a JSON Lines file
and the PostgreSQL ``audit_log`` table.

Each event carries the action name, the Hostex conversation it concerns
(if any), a details dict, and a success flag.  Events are queued and a
single background task writes them out in batches, either when a batch
fills up or when ``flush_interval`` seconds have passed since its first
event, so the polling and sync loops never wait on disk or database I/O.

A failed database insert never loses the file line.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/hostex-bridge/audit.log")
_INSERT_AUDIT_SQL = """
    INSERT INTO audit_log (service, action, conversation_id, details, success)
    VALUES ($1, $2, $3, $4::jsonb, $5)
"""


@dataclass(frozen=True)
class AuditEvent:
    action: str
    conversation_id: Optional[str]
    details: Dict[str, Any]
    success: bool
    timestamp: datetime

    def to_json_line(self, service: str) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "service": service,
                "action": self.action,
                "conversation_id": self.conversation_id,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def to_row(self, service: str) -> tuple:
        return (
            service,
            self.action,
            self.conversation_id,
            json.dumps(self.details, default=str),
            self.success,
        )


class AuditLogger:
    """Queue-backed audit writer for the bridge.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        service: Label stored with every event.
        log_path: JSON Lines file the events are appended to.
        queue_size: Events queued before :meth:`log` applies backpressure.
        batch_size: Maximum events written per flush.
        flush_interval: Seconds a partial batch may wait for more events.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        service: str = "hostex-bridge",
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        batch_size: int = 64,
        flush_interval: float = 1.0,
    ) -> None:
        self._pool = pool
        self._service = service
        self._log_path = Path(log_path)
        self._queue: asyncio.Queue[Optional[AuditEvent]] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._batch_size = max(1, batch_size)
        self._flush_interval = max(0.0, flush_interval)
        self._writer: Optional[asyncio.Task[None]] = None
        self._closed = False
        self._failures: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        conversation_id: Optional[str] = None,
    ) -> None:
        """Queue an audit event.

        Args:
            action: Action name (``"poll_pass"``, ``"room_created"``,
                    ``"relay_failed"``, ``"unauthorized_command"``, ...).
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
            conversation_id: Hostex conversation the event concerns.
        """
        if self._closed:
            logger.debug("Audit logger closed; dropping %s", action)
            return
        if not success:
            self._failures[action] += 1
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(
                self._run(), name="hostex-bridge-audit-writer"
            )
        await self._queue.put(
            AuditEvent(
                action=action,
                conversation_id=conversation_id,
                details=dict(details or {}),
                success=success,
                timestamp=datetime.now(timezone.utc),
            )
        )

    def failure_counts(self) -> Dict[str, int]:
        """Failed events per action since this logger was created."""
        return dict(self._failures)

    async def close(self) -> None:
        """Write out everything queued and stop the writer task."""
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            await self._queue.put(None)
            await self._writer
            self._writer = None

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------

    async def _collect(self, first: AuditEvent) -> tuple[List[AuditEvent], bool]:
        """Gather a batch starting with *first*; report whether close was seen."""
        batch = [first]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._flush_interval
        while len(batch) < self._batch_size:
            remaining = deadline - loop.time()
            try:
                if remaining > 0:
                    event = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                else:
                    event = self._queue.get_nowait()
            except (asyncio.TimeoutError, asyncio.QueueEmpty):
                break
            if event is None:
                return batch, True
            batch.append(event)
        return batch, False

    async def _run(self) -> None:
        while True:
            first = await self._queue.get()
            if first is None:
                return
            batch, closing = await self._collect(first)
            await self._flush(batch)
            if closing:
                return

    async def _flush(self, batch: List[AuditEvent]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.writelines(event.to_json_line(self._service) for event in batch)
        except OSError:
            logger.exception("Failed to append to audit log %s", self._log_path)

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL, [event.to_row(self._service) for event in batch]
                )
        except Exception:
            logger.exception("Failed to insert %d audit event(s)", len(batch))
