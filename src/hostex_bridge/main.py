"""
Bridge entry point — wires configuration, secrets, storage, and both
network clients together and runs the sync engine until signalled.

Runs as a long-lived systemd service under the ``hostex-bridge`` user.

Key behaviours:
    - Loads configuration from ``/etc/hostex-bridge/settings.toml``
      (``$HOSTEX_BRIDGE_CONFIG`` or ``--config`` override the path).
    - Credentials come from the system keychain, never the config file.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Records startup and shutdown in the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from hostex_bridge.engine import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SYNC_TIMEOUT_MS,
    DEFAULT_TIMEZONE,
    Bridge,
)
from hostex_bridge.hostex_client import HostexClient
from hostex_bridge.matrix_client import MatrixChatClient
from hostex_bridge.portal_store import PortalStore
from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_optional_secret, get_secret

logger = logging.getLogger("hostex_bridge.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("HOSTEX_BRIDGE_CONFIG", "/etc/hostex-bridge/settings.toml")
)
_DEFAULT_AUDIT_LOG_PATH = "/var/log/hostex-bridge/audit.log"

_REQUIRED_KEYS = [
    ("homeserver", "address"),
    ("matrix", "user_id"),
    ("hostex", "api_url"),
    ("admin", "user_id"),
    ("database",),
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _positive_number(value: Any, default: float, key: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %s", key, value, default)
        return default
    if number <= 0:
        logger.warning("Non-positive %s=%r; using default %s", key, value, default)
        return default
    return number


def _server_name(user_id: str) -> Optional[str]:
    """``@bridge:example.org`` -> ``example.org``."""
    _, sep, server = user_id.partition(":")
    return server if sep and server else None


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Optional keys are filled with their defaults so the rest of the
    bridge can index them directly.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    for keys in _REQUIRED_KEYS:
        obj = config
        for k in keys:
            if not isinstance(obj, dict) or k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    homeserver = config["homeserver"]
    if not homeserver.get("domain"):
        homeserver["domain"] = _server_name(config["matrix"]["user_id"])

    matrix = config["matrix"]
    matrix.setdefault("device_id", "HostexBridge")

    bridge = config.setdefault("bridge", {})
    bridge.setdefault("timezone", DEFAULT_TIMEZONE)
    bridge["poll_interval_seconds"] = _positive_number(
        bridge.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        DEFAULT_POLL_INTERVAL_SECONDS,
        "bridge.poll_interval_seconds",
    )
    bridge["sync_timeout_ms"] = int(
        _positive_number(
            bridge.get("sync_timeout_ms", DEFAULT_SYNC_TIMEOUT_MS),
            DEFAULT_SYNC_TIMEOUT_MS,
            "bridge.sync_timeout_ms",
        )
    )
    bridge["personal_filtering_spaces"] = bool(bridge.get("personal_filtering_spaces", False))
    bridge["invite_admin"] = bool(bridge.get("invite_admin", True))

    config.setdefault("audit", {}).setdefault("log_path", _DEFAULT_AUDIT_LOG_PATH)
    return config


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _wait_for_shutdown(tick: float = 0.5) -> None:
    while not _shutdown_event.is_set():
        await asyncio.sleep(tick)


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler: sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config_path: Path = _DEFAULT_CONFIG_PATH) -> None:
    """Top-level async entry point for the bridge service."""
    # --- config & secrets ---
    config = load_config(config_path)
    hostex_token = get_secret("hostex-token")
    matrix_password = get_secret("matrix-password")
    session_key = get_optional_secret("session-encryption-key")

    session_path = config["matrix"].get("session_path")
    if session_path and not session_key:
        logger.warning(
            "matrix.session_path is set but no session-encryption-key is available; "
            "the Matrix session will not be cached"
        )

    pool = None
    audit = None
    bridge: Optional[Bridge] = None
    try:
        # --- database ---
        pool = await get_connection_pool(config["database"])
        if not await health_check(pool):
            raise RuntimeError("Database health check failed")
        await init_database(pool)

        store = PortalStore(pool)
        audit = AuditLogger(pool, log_path=Path(config["audit"]["log_path"]))

        # --- network clients ---
        async with HostexClient(config["hostex"]["api_url"], hostex_token) as hostex, \
                MatrixChatClient(
                    config["homeserver"]["address"],
                    config["matrix"]["user_id"],
                    matrix_password,
                    device_id=config["matrix"]["device_id"],
                    session_path=Path(session_path) if session_path else None,
                    session_key=session_key,
                ) as matrix:
            bridge = Bridge(config, store, hostex, matrix, audit=audit)
            await bridge.start()

            await _wait_for_shutdown()
            await bridge.stop()
    finally:
        if bridge is not None:
            try:
                await bridge.stop()
            except Exception:
                logger.exception("Failed to stop bridge")
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Bridge shut down cleanly.")


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    parser = argparse.ArgumentParser(description="Bridge Hostex conversations into Matrix.")
    parser.add_argument(
        "--config",
        type=Path,
        default=_DEFAULT_CONFIG_PATH,
        help=f"Path to settings.toml (default: {_DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main(args.config))


if __name__ == "__main__":
    run()
