"""
Authentication helpers.

Provides:
- read_key_file: read private key bytes, failing with a KeyLoadError
- import_private_key: decode key bytes with proper error mapping
- build_auth_options: asyncssh.connect options for a calculated record
"""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

import asyncssh

from nbs_sshfs.errors import KeyLoadError
from nbs_sshfs.platform import expand_path
from nbs_sshfs.records import ConfigRecord

PAGEANT = "pageant"


class AuthMethod(str, Enum):
    """Authentication methods a calculated record can offer."""
    PASSWORD = "password"
    PRIVATE_KEY = "private_key"
    SSH_AGENT = "ssh_agent"
    KEYBOARD_INTERACTIVE = "keyboard_interactive"


def read_key_file(key_path: Path | str) -> bytes:
    """
    Read a private key file.

    Raises:
        KeyLoadError: If the file cannot be read, naming the path
    """
    path = expand_path(key_path)
    message = f"Error while reading the keyfile at:\n{key_path}"
    if not path.exists():
        raise KeyLoadError(message, key_path=str(key_path), reason="file_not_found")
    if not os.access(path, os.R_OK):
        raise KeyLoadError(message, key_path=str(key_path), reason="permission_denied")
    try:
        return path.read_bytes()
    except OSError as e:
        raise KeyLoadError(message, key_path=str(key_path), reason="read_error") from e


def import_private_key(
    data: bytes,
    passphrase: str | None = None,
    key_path: str | None = None,
) -> asyncssh.SSHKey:
    """
    Decode private key bytes.

    Raises:
        KeyLoadError: If the key cannot be decoded (bad format, wrong passphrase)
    """
    try:
        return asyncssh.import_private_key(data, passphrase)
    except asyncssh.KeyImportError as e:
        error_msg = str(e).lower()
        if "passphrase" in error_msg or "decrypt" in error_msg:
            reason = "wrong_passphrase"
        elif "format" in error_msg or "invalid" in error_msg:
            reason = "invalid_format"
        else:
            reason = "import_error"
        raise KeyLoadError(
            f"Failed to load private key {key_path or '<inline>'}: {e}",
            key_path=key_path,
            reason=reason,
        ) from e


def auth_methods(record: ConfigRecord) -> list[AuthMethod]:
    """Methods the record will offer, in asyncssh's preference order."""
    methods = []
    if record.private_key is not None:
        methods.append(AuthMethod.PRIVATE_KEY)
    elif record.agent:
        methods.append(AuthMethod.SSH_AGENT)
    if record.try_keyboard is not False:
        methods.append(AuthMethod.KEYBOARD_INTERACTIVE)
    if isinstance(record.password, str) and record.password_auth is not False:
        methods.append(AuthMethod.PASSWORD)
    return methods


def build_auth_options(record: ConfigRecord) -> dict[str, Any]:
    """
    Translate a calculated record into asyncssh.connect auth options.

    An explicit key disables the agent; without a key or agent, public
    key authentication is disabled entirely rather than falling back to
    the default key files.
    """
    options: dict[str, Any] = {"username": record.username}

    if record.private_key is not None:
        passphrase = record.passphrase if isinstance(record.passphrase, str) else None
        options["client_keys"] = [
            import_private_key(record.private_key, passphrase, record.private_key_path)
        ]
        options["agent_path"] = None
    elif record.agent:
        # asyncssh loads agent keys only when client_keys is left at its default
        if record.agent != PAGEANT:
            options["agent_path"] = record.agent
    else:
        options["client_keys"] = None
        options["agent_path"] = None

    if isinstance(record.password, str) and record.password_auth is not False:
        options["password"] = record.password
    else:
        options["password"] = None

    options["kbdint_auth"] = record.try_keyboard is not False
    options["agent_forwarding"] = bool(record.agent_forward and record.agent)
    return options
