"""
Error taxonomy for config resolution, transport setup and SFTP bootstrap.

Every failure carries an ErrorContext so it can be logged as structured
JSONL data and rendered by UI collaborators without string parsing.

Error hierarchy:
- SSHFSError (base)
  - ResolutionError (missing/cyclic extend or hop reference)
  - SecretError
    - KeyLoadError (private key file unreadable or undecodable)
    - PromptCancelled (user dismissed a prompt)
    - ConfigurationRequired (user asked to fix the config instead)
    - NoAuthenticationMethod
  - SessionStoreError (explicit session lookup failed)
  - TransportError (socket/proxy/hop failure, names what failed)
    - ProxyError
    - ProxyCommandError
  - BootstrapProtocolError (unexpected remote output during handshake)
  - BootstrapCancelled (channel closed before the sentinel arrived)
  - ConnectError (SSH handshake/authentication)
    - ConnectionRefused
    - ConnectionTimeout
    - HostUnreachable
    - AuthFailed
    - HostKeyMismatch
  - ConfigValueError (unusable field value, also a ValueError)
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass
class ErrorContext:
    """
    Structured context for connection errors.

    Identifies which config, hop or proxy a failure belongs to so that a
    chained connection reports the failing link rather than a bare socket
    error.
    """
    config_name: str | None = None
    host: str | None = None
    port: int | None = None
    username: str | None = None
    hop: str | None = None
    proxy: str | None = None
    key_path: str | None = None
    original_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        field_names = {f.name for f in fields(self)} - {"extra"}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if key == "extra":
                collisions = field_names & value.keys()
                assert not collisions, (
                    f"Extra keys collision with dataclass field names: {collisions}"
                )
                result.update(value)
            else:
                result[key] = value
        return result


class SSHFSError(Exception):
    """
    Base exception for all nbs-sshfs errors.

    All errors carry structured context for logging and debugging.
    """

    def __init__(self, message: str, context: ErrorContext | None = None) -> None:
        assert isinstance(message, str) and message.strip(), (
            f"SSHFSError message must be a non-empty string, got {message!r}"
        )
        super().__init__(message)
        self.context = context or ErrorContext()

    @property
    def error_type(self) -> str:
        """Return the error type name for logging."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSONL logging."""
        return {
            "error_type": self.error_type,
            "message": str(self),
            **self.context.to_dict(),
        }


# ---------------------------------------------------------------------------
# Config resolution
# ---------------------------------------------------------------------------

class ResolutionError(SSHFSError):
    """
    A referenced config could not be resolved.

    Raised (or collected) for missing extend/hop targets and for cycles.
    The chain lists the names being resolved when the problem was found.
    """

    def __init__(
        self,
        message: str,
        chain: list[str] | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.chain = list(chain or [])
        if self.chain:
            self.context.extra["chain"] = self.chain


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

class SecretError(SSHFSError):
    """Base class for failures while gathering secrets."""
    pass


class KeyLoadError(SecretError):
    """
    Failed to read or decode a private key.

    This is raised when:
    - Key file does not exist or is not readable
    - Key file format is invalid
    - Passphrase is incorrect for an encrypted key
    """

    def __init__(
        self,
        message: str,
        key_path: str | None = None,
        reason: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        if context is None:
            context = ErrorContext()
        context.key_path = key_path
        if reason:
            context.extra["reason"] = reason
        super().__init__(message, context)
        self.key_path = key_path
        self.reason = reason


class PromptCancelled(SecretError):
    """The user dismissed a prompt for a required value."""

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.field_name = field_name
        if field_name:
            self.context.extra["field"] = field_name


class ConfigurationRequired(SecretError):
    """The user chose to fix the configuration instead of connecting."""
    pass


class NoAuthenticationMethod(SecretError):
    """No key, agent or password ended up available for authentication."""
    pass


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

class SessionStoreError(SSHFSError):
    """An explicitly requested external session is missing or unusable."""
    pass


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class TransportError(SSHFSError):
    """
    Failed to establish the byte stream for the SSH handshake.

    The message always names the failing link (direct socket, proxy or hop).
    """

    def __init__(
        self,
        message: str,
        via: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.via = via
        if via:
            self.context.extra["via"] = via


class ProxyError(TransportError):
    """SOCKS4/SOCKS5/HTTP CONNECT handshake failed."""
    pass


class ProxyCommandError(TransportError):
    """Error running a shell-spawned proxy command."""

    def __init__(
        self,
        message: str,
        command: str | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message, via=f"proxy command {command!r}" if command else None)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# ---------------------------------------------------------------------------
# SFTP bootstrap
# ---------------------------------------------------------------------------

class BootstrapProtocolError(SSHFSError):
    """
    The remote shell answered the sudo/SFTP handshake unexpectedly.

    remote_text holds the raw remote output that caused the failure.
    """

    def __init__(
        self,
        message: str,
        remote_text: str | None = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context)
        self.remote_text = remote_text
        if remote_text is not None:
            self.context.extra["remote_text"] = remote_text


class BootstrapCancelled(SSHFSError):
    """The shell channel closed before the SFTP READY sentinel arrived."""
    pass


# ---------------------------------------------------------------------------
# SSH handshake
# ---------------------------------------------------------------------------

class ConnectError(SSHFSError):
    """Base class for SSH handshake and authentication failures."""
    pass


class ConnectionRefused(ConnectError):
    """Server actively refused the connection."""
    pass


class ConnectionTimeout(ConnectError):
    """Connection attempt timed out."""
    pass


class HostUnreachable(ConnectError):
    """Host could not be reached (network error)."""
    pass


class AuthFailed(ConnectError):
    """All offered authentication methods were rejected."""
    pass


class HostKeyMismatch(ConnectError):
    """Host key verification failed."""
    pass


# ---------------------------------------------------------------------------
# Config values
# ---------------------------------------------------------------------------

class ConfigValueError(SSHFSError, ValueError):
    """A config field holds a value that cannot be used (bad port, host, ...)."""
    pass
