"""
Secrets and keychain integration — retrieves credentials from the
system keychain and handles the encrypted Matrix credential cache.

Credentials are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) and are
retrieved at runtime, with environment variables as a development
fallback.

The Matrix access token obtained at login is cached in a session file
encrypted at rest with Fernet symmetric encryption, so restarts can reuse
the same device instead of logging in again.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("shared.secrets")


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


KEYCHAIN_TIMEOUT_SECONDS = 10
ENV_PREFIX = "HOSTEX_BRIDGE_"


def secret_env_var(key_name: str) -> str:
    """Environment variable consulted for *key_name*, e.g. ``HOSTEX_BRIDGE_HOSTEX_TOKEN``."""
    return ENV_PREFIX + key_name.upper().replace("-", "_")


def _keychain_lookup(key_name: str, service: str) -> Optional[str]:
    command = ["secret-tool", "lookup", "service", service, "key", key_name]
    try:
        result = subprocess.run(
            command, capture_output=True, text=True, timeout=KEYCHAIN_TIMEOUT_SECONDS
        )
    except FileNotFoundError:
        logger.debug("No secret-tool binary; checking %s", secret_env_var(key_name))
        return None
    except subprocess.TimeoutExpired:
        logger.warning("Keychain lookup for '%s' timed out", key_name)
        return None
    except OSError:
        logger.warning("Keychain lookup for '%s' failed", key_name, exc_info=True)
        return None
    return result.stdout.strip() or None


def get_secret(key_name: str, service: str = "hostex-bridge") -> str:
    """Look up the Hostex API token, Matrix password or session key.

    The libsecret keychain is tried first (``secret-tool lookup service
    hostex-bridge key <key_name>``); the environment variable named by
    :func:`secret_env_var` is the fallback for hosts without a keychain.

    Raises:
        RuntimeError: Neither source holds a value.
    """
    secret = _keychain_lookup(key_name, service)
    if secret:
        return secret

    env_key = secret_env_var(key_name)
    secret = os.environ.get(env_key)
    if secret:
        logger.debug("Secret '%s' read from %s", key_name, env_key)
        return secret

    raise RuntimeError(
        f"Secret '{key_name}' is missing: not in keychain service {service!r} "
        f"and {env_key} is unset"
    )


def get_optional_secret(key_name: str, service: str = "hostex-bridge") -> Optional[str]:
    """Like :func:`get_secret` but returns ``None`` when the secret is unset."""
    try:
        return get_secret(key_name, service=service)
    except RuntimeError:
        return None


# ---------------------------------------------------------------------------
# Credential cache (Fernet)
# ---------------------------------------------------------------------------


def save_session(path: Path, session: Dict[str, Any], key: str) -> None:
    """Encrypt *session* as JSON and write it to *path* with mode 0600.

    Args:
        path: Destination file for the encrypted session.
        session: JSON-serialisable credentials (access token, device id).
        key: Fernet-compatible key (base64-encoded 32-byte key).
    """
    f = Fernet(key.encode())
    ciphertext = f.encrypt(json.dumps(session).encode("utf-8"))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(ciphertext)
    path.chmod(0o600)
    logger.info("Session cache written: %s", path)


def load_session(path: Path, key: str) -> Optional[Dict[str, Any]]:
    """Decrypt a cached session and return it **in memory**.

    Returns:
        The decoded session dict, or ``None`` if the file is missing,
        was encrypted with a different key, or is not valid JSON.
    """
    if not path.exists():
        return None

    f = Fernet(key.encode())
    try:
        plaintext = f.decrypt(path.read_bytes())
    except InvalidToken:
        logger.warning("Session cache %s could not be decrypted; ignoring", path)
        return None

    try:
        session = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Session cache %s is corrupt; ignoring", path)
        return None

    if not isinstance(session, dict):
        return None
    return session


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key.

    This should be called once during initial setup and the resulting
    key stored in the system keychain as ``session-encryption-key``.
    """
    return Fernet.generate_key().decode()
