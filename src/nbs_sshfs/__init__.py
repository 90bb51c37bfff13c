"""nbs-sshfs: layered SSH FS config resolution and SFTP session setup."""

__version__ = "0.1.0"

from nbs_sshfs.auth import AuthMethod, auth_methods, build_auth_options, import_private_key, read_key_file
from nbs_sshfs.bootstrap import (
    BootstrapState,
    SessionBootstrap,
    normalize_sftp_command,
    run_bootstrap,
)
from nbs_sshfs.calculator import ConnectionCalculator
from nbs_sshfs.connection import SFTPSession, SSHFSConnection, SSHFSConnector, Target
from nbs_sshfs.errors import (
    AuthFailed,
    BootstrapCancelled,
    BootstrapProtocolError,
    ConfigurationRequired,
    ConfigValueError,
    ConnectError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    KeyLoadError,
    NoAuthenticationMethod,
    PromptCancelled,
    ProxyCommandError,
    ProxyError,
    ResolutionError,
    SecretError,
    SessionStoreError,
    SSHFSError,
    TransportError,
)
from nbs_sshfs.events import Event, EventCollector, EventEmitter, EventType
from nbs_sshfs.flags import FlagStore
from nbs_sshfs.patterns import match_glob, match_host_patterns, match_list
from nbs_sshfs.prompts import ConsolePrompter, NullPrompter, Prompter
from nbs_sshfs.proxy import ProxyCommandProcess, open_proxy_socket
from nbs_sshfs.records import (
    ConfigLayer,
    ConfigRecord,
    ProxyConfig,
    ProxyType,
    ResolutionState,
    censor_config,
    parse_connection_string,
)
from nbs_sshfs.resolver import ConfigResolver, ConfigSnapshot
from nbs_sshfs.session_store import PuttySession, SessionStore, find_session
from nbs_sshfs.ssh_config import (
    MatchContext,
    SSHConfigHolder,
    build_holder,
    fill_config_record,
    parse_contents,
)
from nbs_sshfs.transport import HopPool, TransportChain, TransportStream

__all__ = [
    # Config records
    "ConfigLayer",
    "ConfigRecord",
    "ProxyConfig",
    "ProxyType",
    "ResolutionState",
    "censor_config",
    "parse_connection_string",
    # Resolution
    "ConfigResolver",
    "ConfigSnapshot",
    "FlagStore",
    # ssh_config
    "MatchContext",
    "SSHConfigHolder",
    "build_holder",
    "fill_config_record",
    "parse_contents",
    "match_glob",
    "match_host_patterns",
    "match_list",
    # Sessions and secrets
    "PuttySession",
    "SessionStore",
    "find_session",
    "ConsolePrompter",
    "NullPrompter",
    "Prompter",
    "AuthMethod",
    "auth_methods",
    "build_auth_options",
    "import_private_key",
    "read_key_file",
    "ConnectionCalculator",
    # Transport and SFTP
    "HopPool",
    "TransportChain",
    "TransportStream",
    "ProxyCommandProcess",
    "open_proxy_socket",
    "BootstrapState",
    "SessionBootstrap",
    "normalize_sftp_command",
    "run_bootstrap",
    "SFTPSession",
    "SSHFSConnection",
    "SSHFSConnector",
    "Target",
    # Events
    "Event",
    "EventCollector",
    "EventEmitter",
    "EventType",
    # Errors
    "AuthFailed",
    "BootstrapCancelled",
    "BootstrapProtocolError",
    "ConfigurationRequired",
    "ConfigValueError",
    "ConnectError",
    "ConnectionRefused",
    "ConnectionTimeout",
    "ErrorContext",
    "HostKeyMismatch",
    "HostUnreachable",
    "KeyLoadError",
    "NoAuthenticationMethod",
    "PromptCancelled",
    "ProxyCommandError",
    "ProxyError",
    "ResolutionError",
    "SecretError",
    "SessionStoreError",
    "SSHFSError",
    "TransportError",
]
