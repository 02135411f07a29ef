"""
Sync engine — the long-running core of the Hostex bridge.

Owns the two concurrent loops and the registries they share:

    - **Poll loop**: every ``poll_interval`` seconds, list Hostex
      conversations and, per conversation, find-or-create its
      :class:`~hostex_bridge.portal.Portal`, ensure its room, and backfill.
    - **Sync loop**: long-poll Matrix ``/sync`` and route each inbound
      message either to a command dispatcher (control room) or to the
      portal bridged into that room.

Both loops observe one shared stop event.  Nothing that fails inside a
loop iteration terminates the process; startup failures (login, control
room, personal space) propagate out of :meth:`Bridge.start`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Set

from hostex_bridge.commands import CommandDispatcher
from hostex_bridge.hostex_client import Conversation, HostexClient
from hostex_bridge.matrix_client import InboundEvent, MatrixChatClient, SPACE_ROOM_TYPE
from hostex_bridge.portal import Portal, resolve_timezone
from hostex_bridge.portal_store import PortalStore
from shared.audit import AuditLogger

logger = logging.getLogger("hostex_bridge.engine")

CONTROL_ROOM_NAME = "Hostex Bridge Management"
CONTROL_ROOM_TOPIC = "Management room for Hostex bridge"
SPACE_NAME = "Hostex Conversations"
SPACE_TOPIC = "Personal space for Hostex conversations"
SETUP_NOTICE = "Hostex bridge has been set up and is now running."

DEFAULT_TIMEZONE = "America/Los_Angeles"
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_SYNC_TIMEOUT_MS = 30000
SYNC_RETRY_SECONDS = 5.0


class BridgeState(enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


_TRANSITIONS: Dict[BridgeState, Set[BridgeState]] = {
    BridgeState.CREATED: {BridgeState.STARTING, BridgeState.STOPPED},
    BridgeState.STARTING: {BridgeState.RUNNING, BridgeState.STOPPED},
    BridgeState.RUNNING: {BridgeState.STOPPING},
    BridgeState.STOPPING: {BridgeState.STOPPED},
    BridgeState.STOPPED: set(),
}


class BridgeStateError(RuntimeError):
    """An illegal lifecycle transition was requested."""


class _Stopped(Exception):
    """Raised internally when a wait is abandoned because of shutdown."""


class Bridge:
    """Polls Hostex, mirrors conversations into Matrix rooms, and relays replies.

    Args:
        config: Parsed settings (see ``hostex_bridge.main.load_config``).
        store: Persistence store.
        hostex: Hostex API client (already entered).
        matrix: Matrix chat client (already entered, not yet logged in).
        audit: Optional audit logger.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: PortalStore,
        hostex: HostexClient,
        matrix: MatrixChatClient,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        bridge_config = config.get("bridge", {})
        self.store = store
        self.hostex = hostex
        self.matrix = matrix
        self.audit = audit

        self.admin_user_id: str = config["admin"]["user_id"]
        self.homeserver_domain: Optional[str] = config.get("homeserver", {}).get("domain")
        self.timezone_name: str = bridge_config.get("timezone", DEFAULT_TIMEZONE)
        self.tz = resolve_timezone(self.timezone_name)
        self.poll_interval = float(
            bridge_config.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        self.sync_timeout_ms = int(bridge_config.get("sync_timeout_ms", DEFAULT_SYNC_TIMEOUT_MS))
        self.personal_spaces = bool(bridge_config.get("personal_filtering_spaces", False))
        self.invite_admin = bool(bridge_config.get("invite_admin", True))

        self.state = BridgeState.CREATED
        self.control_room_id: Optional[str] = None
        self.space_room_id: Optional[str] = None
        self.matrix_connected = False
        self.hostex_connected = False
        self.last_poll_time: Optional[datetime] = None

        self._portals: Dict[str, Portal] = {}
        self._portals_lock = asyncio.Lock()
        self._users: Dict[str, CommandDispatcher] = {}
        self._users_lock = asyncio.Lock()

        self._stop_event = asyncio.Event()
        self._loops: List[asyncio.Task[None]] = []
        self._background_tasks: Set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, new_state: BridgeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise BridgeStateError(
                f"Illegal bridge transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Bridge state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    @property
    def running(self) -> bool:
        return self.state is BridgeState.RUNNING

    async def start(self) -> None:
        """Log in, resolve the control room (and space), and start both loops.

        Raises:
            BridgeStateError: If the bridge was already started.
            Exception: Login, control-room or space failures propagate and
                no loop is started.
        """
        self._transition(BridgeState.STARTING)
        logger.info("Starting Hostex bridge")
        try:
            await self.matrix.login()
            self.matrix_connected = True
            self.control_room_id = await self._resolve_control_room()
            if self.personal_spaces:
                self.space_room_id = await self._resolve_space()
        except Exception:
            self.matrix_connected = False
            self._transition(BridgeState.STOPPED)
            raise

        self._transition(BridgeState.RUNNING)
        self._loops = [
            asyncio.create_task(self._poll_loop(), name="hostex-bridge-poll"),
            asyncio.create_task(self._sync_loop(), name="hostex-bridge-sync"),
        ]
        logger.info(
            "Bridge running (control room %s, poll every %.1fs, timezone %s)",
            self.control_room_id,
            self.poll_interval,
            self.timezone_name,
        )

        try:
            await self.matrix.send_notice(self.control_room_id, SETUP_NOTICE)
        except Exception:
            logger.error("Failed to send setup notice", exc_info=True)

        if self.audit:
            await self.audit.log(
                "startup",
                {
                    "user_id": self.matrix.user_id,
                    "control_room": self.control_room_id,
                    "space_room": self.space_room_id,
                },
                success=True,
            )

    async def stop(self) -> None:
        """Signal both loops and wait for them (and any ``!sync`` task) to exit."""
        if self.state in (BridgeState.STOPPING, BridgeState.STOPPED):
            return
        if self.state is BridgeState.CREATED:
            self._transition(BridgeState.STOPPED)
            return

        self._transition(BridgeState.STOPPING)
        logger.info("Stopping Hostex bridge")
        self._stop_event.set()

        results = await asyncio.gather(*self._loops, return_exceptions=True)
        for task, result in zip(self._loops, results):
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                logger.error("%s exited with an error: %r", task.get_name(), result)
        self._loops = []

        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

        self._transition(BridgeState.STOPPED)
        if self.audit:
            await self.audit.log("shutdown", {"portals": len(self._portals)}, success=True)
        logger.info("Hostex bridge stopped.")

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task[Any]:
        """Run *coro* as a tracked background task that ``stop()`` waits for."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_task_done)
        return task

    def _background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    # ------------------------------------------------------------------
    # Control room / space bootstrap
    # ------------------------------------------------------------------

    async def _room_name(self, room_id: str) -> Optional[str]:
        content = await self.matrix.read_room_state(room_id, "m.room.name")
        if not content:
            return None
        name = content.get("name")
        return name if isinstance(name, str) else None

    async def _resolve_control_room(self) -> str:
        for room_id in await self.matrix.joined_rooms():
            try:
                name = await self._room_name(room_id)
            except Exception:
                logger.debug("Could not read name of room %s", room_id, exc_info=True)
                continue
            if name == CONTROL_ROOM_NAME:
                logger.info("Using existing control room %s", room_id)
                return room_id

        room_id = await self.matrix.create_room(
            name=CONTROL_ROOM_NAME,
            topic=CONTROL_ROOM_TOPIC,
            invitees=[self.admin_user_id],
        )
        logger.info("Created control room %s", room_id)
        return room_id

    async def _resolve_space(self) -> str:
        for room_id in await self.matrix.joined_rooms():
            try:
                create = await self.matrix.read_room_state(room_id, "m.room.create")
                if not create or create.get("type") != SPACE_ROOM_TYPE:
                    continue
                name = await self._room_name(room_id)
            except Exception:
                logger.debug("Could not read state of room %s", room_id, exc_info=True)
                continue
            if name == SPACE_NAME:
                logger.info("Using existing personal space %s", room_id)
                return room_id

        room_id = await self.matrix.create_room(
            name=SPACE_NAME,
            topic=SPACE_TOPIC,
            invitees=[self.admin_user_id],
            is_space=True,
        )
        logger.info("Created personal space %s", room_id)
        return room_id

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def _new_portal(self, conversation_id: str) -> Portal:
        return Portal(
            conversation_id,
            store=self.store,
            hostex=self.hostex,
            matrix=self.matrix,
            tz=self.tz,
            admin_user_id=self.admin_user_id if self.invite_admin else None,
            space_room_id=self.space_room_id,
            homeserver_domain=self.homeserver_domain,
            audit=self.audit,
        )

    async def get_or_create_portal(self, conversation_id: str) -> Portal:
        async with self._portals_lock:
            portal = self._portals.get(conversation_id)
            if portal is None:
                portal = self._new_portal(conversation_id)
                self._portals[conversation_id] = portal
                logger.debug("Registered portal for conversation %s", conversation_id)
            return portal

    async def find_portal_by_room(self, room_id: str) -> Optional[Portal]:
        """Return the portal bridged into *room_id*.

        Falls back to the store's reverse lookup so rooms created before a
        restart are routed before the next poll has loaded them.
        """
        async with self._portals_lock:
            for portal in self._portals.values():
                if portal.room_id == room_id:
                    return portal

            try:
                conversation_id = await self.store.get_portal_by_room(room_id)
            except Exception:
                logger.error("Portal lookup for room %s failed", room_id, exc_info=True)
                return None
            if not conversation_id:
                return None

            portal = self._portals.get(conversation_id)
            if portal is None:
                portal = self._new_portal(conversation_id)
                self._portals[conversation_id] = portal
            if not portal.room_id:
                portal.room_id = room_id
            logger.info("Recovered portal %s for room %s", conversation_id, room_id)
            return portal

    async def get_or_create_user(self, user_id: str) -> CommandDispatcher:
        async with self._users_lock:
            dispatcher = self._users.get(user_id)
            if dispatcher is None:
                try:
                    remote_id = await self.store.get_user_mapping(user_id)
                except Exception:
                    logger.warning("User mapping lookup for %s failed", user_id, exc_info=True)
                    remote_id = None
                dispatcher = CommandDispatcher(self, user_id, remote_id=remote_id)
                self._users[user_id] = dispatcher
            return dispatcher

    async def bridged_portals(self) -> List[Portal]:
        """Snapshot of portals that have a room, ordered by conversation id."""
        async with self._portals_lock:
            portals = [portal for portal in self._portals.values() if portal.room_id]
        return sorted(portals, key=lambda portal: portal.conversation_id)

    # ------------------------------------------------------------------
    # Hostex -> Matrix
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one poll cycle over every Hostex conversation.

        Returns:
            Number of messages relayed into Matrix.
        """
        if not self.running:
            logger.debug("Skipping poll; bridge is %s", self.state.value)
            return 0

        self.last_poll_time = datetime.now(self.tz)
        try:
            conversations = await self.hostex.list_conversations()
        except Exception:
            self.hostex_connected = False
            logger.exception("Failed to list Hostex conversations")
            if self.audit:
                await self.audit.log("poll_pass", {"error": "see logs"}, success=False)
            return 0
        self.hostex_connected = True

        relayed = 0
        for conversation in conversations:
            if self._stop_event.is_set():
                logger.info("Shutdown requested; ending poll cycle early.")
                break
            try:
                relayed += await self.handle_conversation(conversation)
            except Exception:
                logger.exception("Error handling Hostex conversation %s", conversation.id)

        if relayed and self.audit:
            await self.audit.log(
                "poll_pass",
                {"conversations": len(conversations), "relayed": relayed},
                success=True,
            )
        return relayed

    async def handle_conversation(self, conversation: Conversation) -> int:
        portal = await self.get_or_create_portal(conversation.id)
        async with portal.lock:
            portal.update_info(conversation)
            try:
                await portal.ensure_room()
            except Exception:
                logger.exception(
                    "Failed to create Matrix room for conversation %s", conversation.id
                )
                return 0
            try:
                return await portal.backfill()
            except Exception:
                logger.exception("Failed to backfill conversation %s", conversation.id)
                return 0

    # ------------------------------------------------------------------
    # Matrix -> Hostex
    # ------------------------------------------------------------------

    async def route_inbound(self, event: InboundEvent) -> None:
        """Route one Matrix message to the command path or its portal."""
        if not self.running:
            logger.debug("Dropping event %s; bridge is %s", event.event_id, self.state.value)
            return
        if event.sender == self.matrix.user_id:
            return

        if event.room_id == self.control_room_id:
            if not event.is_text:
                return
            dispatcher = await self.get_or_create_user(event.sender)
            await dispatcher.handle_command(event.room_id, event.body)
            return

        portal = await self.find_portal_by_room(event.room_id)
        if portal is None:
            logger.warning(
                "Received message for unknown room %s (event %s)", event.room_id, event.event_id
            )
            return
        async with portal.lock:
            await portal.relay_inbound(event)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _sleep_with_stop(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True

    async def _until_stopped(self, coro: Awaitable[Any]) -> Any:
        """Await *coro*, abandoning it if the stop event fires first."""
        task = asyncio.ensure_future(coro)
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("Abandoned call failed during shutdown", exc_info=True)
        raise _Stopped()

    async def _poll_loop(self) -> None:
        while not await self._sleep_with_stop(self.poll_interval):
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Error during Hostex poll")
        logger.info("Poll loop stopped.")

    async def _sync_loop(self) -> None:
        since: Optional[str] = None
        initial = True
        while not self._stop_event.is_set():
            try:
                next_batch, events = await self._until_stopped(
                    self.matrix.sync(since, timeout_ms=self.sync_timeout_ms)
                )
            except _Stopped:
                break
            except Exception:
                self.matrix_connected = False
                logger.exception("Matrix sync failed; retrying in %.0fs", SYNC_RETRY_SECONDS)
                if await self._sleep_with_stop(SYNC_RETRY_SECONDS):
                    break
                continue

            self.matrix_connected = True
            since = next_batch
            if initial:
                # First sync only positions the stream.
                initial = False
                logger.info("Matrix sync established (skipped %d historical events)", len(events))
                continue

            for event in events:
                if self._stop_event.is_set():
                    break
                try:
                    await self.route_inbound(event)
                except Exception:
                    logger.exception("Error routing Matrix event %s", event.event_id)
        logger.info("Sync loop stopped.")
