"""
Control-room command handling.

One :class:`CommandDispatcher` exists per Matrix user seen in the control
room.  Only the configured admin may run commands; anyone else is logged
and silently ignored (no reply, to avoid confirming what the room is).

Commands are case-insensitive and keyed by the first whitespace-delimited
token of the message body.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

if TYPE_CHECKING:
    from hostex_bridge.engine import Bridge

logger = logging.getLogger("hostex_bridge.commands")

HELP_TEXT = (
    "Available commands:\n"
    "!help - Show this help message\n"
    "!status - Show bridge status\n"
    "!list - List active conversations\n"
    "!sync - Force sync conversations from Hostex"
)
UNKNOWN_COMMAND_TEXT = "Unknown command. Type !help for a list of available commands."
SYNC_STARTED_TEXT = "Forcing sync of conversations from Hostex..."
SYNC_COMPLETE_TEXT = "Sync complete. Use !list to see updated conversations."
SYNC_FAILED_TEXT = "Sync failed. Check the bridge logs for details."
NO_CONVERSATIONS_TEXT = "No bridged conversations yet."


class Command(enum.Enum):
    """The closed set of control-room commands."""

    HELP = "!help"
    STATUS = "!status"
    LIST = "!list"
    SYNC = "!sync"
    UNKNOWN = ""

    @classmethod
    def parse(cls, body: str) -> Optional["Command"]:
        """Map a message body to a command; ``None`` for an empty body."""
        parts = (body or "").split()
        if not parts:
            return None
        try:
            command = cls(parts[0].lower())
        except ValueError:
            return cls.UNKNOWN
        return command


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.isoformat(timespec="seconds")


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


CommandHandler = Callable[["CommandDispatcher", str, str], Awaitable[None]]


def admin_only(func: CommandHandler) -> CommandHandler:
    """Run the wrapped handler only when the dispatcher's user is the admin.

    Non-admin commands are dropped without a reply and recorded in the
    audit log.
    """

    @wraps(func)
    async def wrapper(self: "CommandDispatcher", room_id: str, body: str) -> None:
        admin = self._bridge.admin_user_id
        if self.user_id != admin:
            logger.warning(
                "admin_only: blocked command from %s (admin=%s) in %s",
                self.user_id,
                admin,
                room_id,
            )
            audit = self._bridge.audit
            if audit:
                await audit.log(
                    "unauthorized_command",
                    {"user_id": self.user_id, "room_id": room_id},
                    success=False,
                )
            return
        await func(self, room_id, body)

    return wrapper


class CommandDispatcher:
    """Interprets control-room commands for one Matrix user.

    Args:
        bridge: The running bridge (for status, portal list, and polling).
        user_id: Matrix user id this dispatcher speaks for.
        remote_id: Hostex identity mapped to *user_id*, if one is stored.
            Informational only; authorization uses the configured admin.
    """

    def __init__(self, bridge: "Bridge", user_id: str, remote_id: Optional[str] = None) -> None:
        self._bridge = bridge
        self.user_id = user_id
        self.remote_id = remote_id
        self._handlers: Dict[Command, Callable[[str], Awaitable[Any]]] = {
            Command.HELP: self._send_help,
            Command.STATUS: self._send_status,
            Command.LIST: self._send_list,
            Command.SYNC: self._force_sync,
            Command.UNKNOWN: self._send_unknown,
        }

    @admin_only
    async def handle_command(self, room_id: str, body: str) -> None:
        command = Command.parse(body)
        if command is None:
            return
        logger.info("Command %s from %s", command.name.lower(), self.user_id)
        if self._bridge.audit and command is not Command.UNKNOWN:
            await self._bridge.audit.log("command", {"command": command.value}, success=True)
        await self._handlers[command](room_id)

    async def _notice(self, room_id: str, text: str) -> None:
        try:
            await self._bridge.matrix.send_notice(room_id, text)
        except Exception:
            logger.error("Failed to send notice to %s", room_id, exc_info=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _send_help(self, room_id: str) -> None:
        await self._notice(room_id, HELP_TEXT)

    async def _send_status(self, room_id: str) -> None:
        bridge = self._bridge
        portals = await bridge.bridged_portals()
        lines = [
            "Bridge status:",
            f"Connected to Matrix: {_yes_no(bridge.matrix_connected)}",
            f"Last Hostex poll succeeded: {_yes_no(bridge.hostex_connected)}",
            f"Bridged conversations: {len(portals)}",
            f"Last poll time: {_format_time(bridge.last_poll_time)}",
            f"Timezone: {bridge.timezone_name}",
        ]
        try:
            stats = await bridge.store.get_stats()
        except Exception:
            logger.warning("Could not load store statistics for !status", exc_info=True)
        else:
            lines.append(
                f"Stored messages: {stats['messages']} "
                f"({stats['undelivered']} undelivered)"
            )
        if bridge.audit is not None:
            failures = bridge.audit.failure_counts()
            if failures:
                summary = ", ".join(f"{name}={count}" for name, count in sorted(failures.items()))
                lines.append(f"Failures since start: {summary}")
        if self.remote_id:
            lines.append(f"Linked Hostex identity: {self.remote_id}")
        await self._notice(room_id, "\n".join(lines))

    async def _send_list(self, room_id: str) -> None:
        portals = await self._bridge.bridged_portals()
        if not portals:
            await self._notice(room_id, NO_CONVERSATIONS_TEXT)
            return

        entries = []
        for portal in portals:
            entries.append(
                f"- {portal.guest_name} ({portal.channel_type or 'unknown channel'})\n"
                f"  Room: {portal.room_id}\n"
                f"  Last activity: {_format_time(portal.last_activity)}"
            )
        await self._notice(room_id, "Active conversations:\n\n" + "\n\n".join(entries))

    async def _force_sync(self, room_id: str) -> None:
        await self._notice(room_id, SYNC_STARTED_TEXT)

        async def _run() -> None:
            try:
                await self._bridge.poll_once()
            except Exception:
                logger.exception("Manual sync failed")
                await self._notice(room_id, SYNC_FAILED_TEXT)
                return
            await self._notice(room_id, SYNC_COMPLETE_TEXT)

        self._bridge.spawn(_run(), name="hostex-bridge-manual-sync")

    async def _send_unknown(self, room_id: str) -> None:
        await self._notice(room_id, UNKNOWN_COMMAND_TEXT)
