"""
PuTTY saved-session lookup.

Sessions are read from the Windows registry
(HKCU\\Software\\SimonTatham\\PuTTY\\Sessions) or, elsewhere, from
~/.putty/sessions where each file is named after the URL-encoded session
name and holds Key=Value lines.

Lookups have an expected "not found" outcome, so find_session returns
None rather than raising.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import unquote

from nbs_sshfs.errors import SessionStoreError
from nbs_sshfs.platform import get_putty_sessions_dir, is_windows

log = logging.getLogger("nbs_sshfs.session_store")

REGISTRY_KEY = r"Software\SimonTatham\PuTTY\Sessions"

# Index of PuTTY's proxy method setting
PROXY_METHODS = ("none", "socks4", "socks5", "http", "telnet", "local")


@dataclass
class PuttySession:
    """The subset of a PuTTY session used to fill a record."""
    name: str
    hostname: str | None = None
    protocol: str = "ssh"
    portnumber: int | None = None
    username: str | None = None
    usernamefromenvironment: bool = False
    tryagent: bool = False
    publickeyfile: str | None = None
    proxyhost: str | None = None
    proxyport: int | None = None
    proxylocalhost: bool = False
    proxymethod: int = 0

    @classmethod
    def from_properties(cls, name: str, properties: Mapping[str, str | int]) -> PuttySession:
        """Build a session from raw, case-insensitive setting names."""
        props = {key.lower(): value for key, value in properties.items()}

        def text(key: str) -> str | None:
            value = props.get(key)
            return str(value) if value not in (None, "") else None

        def number(key: str, default: int | None = None) -> int | None:
            value = props.get(key)
            if value in (None, ""):
                return default
            try:
                return int(value)
            except (TypeError, ValueError):
                return default

        return cls(
            name=name,
            hostname=text("hostname"),
            protocol=text("protocol") or "ssh",
            portnumber=number("portnumber"),
            username=text("username"),
            usernamefromenvironment=bool(number("usernamefromenvironment", 0)),
            tryagent=bool(number("tryagent", 0)),
            publickeyfile=text("publickeyfile"),
            proxyhost=text("proxyhost"),
            proxyport=number("proxyport"),
            proxylocalhost=bool(number("proxylocalhost", 0)),
            proxymethod=number("proxymethod", 0) or 0,
        )


def _parse_session_file(path: Path) -> dict[str, str]:
    properties: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        properties[key.strip()] = value.strip()
    return properties


def load_file_sessions(directory: Path) -> list[PuttySession]:
    """Read every session file in a PuTTY sessions directory."""
    if not directory.is_dir():
        log.debug("No PuTTY sessions directory at %s", directory)
        return []
    sessions = []
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        try:
            properties = _parse_session_file(path)
        except OSError as e:
            raise SessionStoreError(f"Could not read PuTTY session file {path}: {e}") from e
        sessions.append(PuttySession.from_properties(unquote(path.name), properties))
    return sessions


def load_registry_sessions() -> list[PuttySession]:
    """Read every session from the Windows registry."""
    import winreg

    sessions = []
    try:
        root = winreg.OpenKey(winreg.HKEY_CURRENT_USER, REGISTRY_KEY)
    except FileNotFoundError:
        return []
    with root:
        index = 0
        while True:
            try:
                key_name = winreg.EnumKey(root, index)
            except OSError:
                break
            index += 1
            properties: dict[str, str | int] = {}
            with winreg.OpenKey(root, key_name) as session_key:
                value_index = 0
                while True:
                    try:
                        value_name, value, _ = winreg.EnumValue(session_key, value_index)
                    except OSError:
                        break
                    value_index += 1
                    properties[value_name] = value
            sessions.append(PuttySession.from_properties(unquote(key_name), properties))
    return sessions


class SessionStore:
    """
    Source of PuTTY sessions for the current platform.

    Args:
        sessions_dir: Directory to read on non-Windows platforms
            (default ~/.putty/sessions)
    """

    def __init__(self, sessions_dir: Path | None = None) -> None:
        self._sessions_dir = sessions_dir

    def get_sessions(self) -> list[PuttySession]:
        log.info("Fetching PuTTY sessions")
        if is_windows() and self._sessions_dir is None:
            sessions = load_registry_sessions()
        else:
            sessions = load_file_sessions(self._sessions_dir or get_putty_sessions_dir())
        log.debug("Found %d sessions", len(sessions))
        for session in sessions:
            log.debug("- %s", asdict(session))
        return sessions


def find_session(
    sessions: Sequence[PuttySession],
    name: str | None = None,
    host: str | None = None,
    username: str | None = None,
    name_only: bool = True,
) -> PuttySession | None:
    """
    Find a session by name, falling back to host and user.

    The name is compared case-insensitively. With name_only set, or when
    the name matched, the name lookup decides. Otherwise sessions for the
    host are considered, preferring one without a username or with a
    matching one.
    """
    if name:
        lower = name.lower()
        found = next((s for s in sessions if s.name.lower() == lower), None)
        if name_only or found is not None:
            return found
    if not host:
        return None
    host = host.lower()
    candidates = [s for s in sessions if s.hostname and s.hostname.lower() == host]
    if not username:
        return candidates[0] if candidates else None
    username = username.lower()
    return next(
        (s for s in candidates if not s.username or s.username.lower() == username),
        None,
    )
