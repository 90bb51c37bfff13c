"""
Input validation for config names and connection parameters.

Hostnames, usernames and ports end up in sockets, proxy handshakes and
ProxyCommand lines, so control characters and shell metacharacters are
rejected before anything is connected.
"""

import re
from typing import Final

MAX_HOSTNAME_LENGTH: Final[int] = 253

# Characters that must never appear in a hostname or username
DANGEROUS_CHARS: Final[frozenset[str]] = frozenset(
    "\x00"  # null byte
    "\n\r"  # newlines
    "`$(){}|;&<>\\'\""  # shell metacharacters
    "\t"  # tab
    " "
)

CONFIG_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[\w\\/.@+-]+$")

INVALID_NAME_MESSAGE: Final[str] = (
    "A config name can only consist of lowercase alphanumeric characters, "
    "slashes and any of these: _.+-@"
)


def _check_dangerous_chars(value: str, field_name: str) -> None:
    """
    Check for dangerous characters in a value.

    Raises:
        ValueError: If dangerous characters are found
    """
    for char in value:
        if char in DANGEROUS_CHARS:
            if char == "\x00":
                char_desc = "null byte"
            elif char == "\n":
                char_desc = "newline"
            elif char == "\r":
                char_desc = "carriage return"
            elif char == "\t":
                char_desc = "tab"
            elif char == " ":
                char_desc = "space"
            else:
                char_desc = repr(char)
            raise ValueError(f"{field_name} contains forbidden character: {char_desc}")


def invalid_config_name(name: str | None) -> str | None:
    """
    Check a config name.

    Returns:
        None for a valid name, otherwise a message suitable for display
    """
    if not name:
        return "Missing a name for this config"
    if CONFIG_NAME_PATTERN.match(name):
        return None
    return INVALID_NAME_MESSAGE


def validate_hostname(hostname: str) -> str:
    """
    Validate a hostname or IP literal.

    Unlike strict RFC 1123 checks, underscores and IPv6 literals are allowed
    since session stores and ssh_config files routinely contain them.

    Raises:
        ValueError: If the hostname is invalid, with a clear message
    """
    if not isinstance(hostname, str):
        raise ValueError(f"hostname must be a string, got {type(hostname).__name__}")
    if not hostname:
        raise ValueError("hostname must not be empty")
    _check_dangerous_chars(hostname, "hostname")
    if len(hostname) > MAX_HOSTNAME_LENGTH:
        raise ValueError(
            f"hostname exceeds maximum length of {MAX_HOSTNAME_LENGTH} characters "
            f"(got {len(hostname)})"
        )
    return hostname


def validate_username(username: str) -> str:
    """
    Validate a username.

    Raises:
        ValueError: If the username is empty or contains forbidden characters
    """
    if not isinstance(username, str):
        raise ValueError(f"username must be a string, got {type(username).__name__}")
    if not username:
        raise ValueError("username must not be empty")
    _check_dangerous_chars(username, "username")
    return username


def validate_port(port: int | str) -> int:
    """
    Validate a port number, accepting numeric strings.

    Returns:
        The port as an int in range 1-65535

    Raises:
        ValueError: If the port is invalid, with a clear message
    """
    # Reject bool first (bool is a subclass of int in Python)
    if isinstance(port, bool):
        raise ValueError("port must be an integer, got bool")

    if isinstance(port, str):
        text = port.strip()
        if not text.isdigit():
            raise ValueError(f"The string '{port}' is not a valid port number")
        port = int(text)

    if not isinstance(port, int):
        raise ValueError(f"port must be an integer, got {type(port).__name__}")

    if port < 1 or port > 65535:
        raise ValueError(f"The string '{port}' is not a valid port number")

    return port
