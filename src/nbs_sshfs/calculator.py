"""
Turns a declarative record into a secret-populated connection record.

The pipeline runs, in order:
1. $NAME substitution on host, port, agent and private key path
2. PuTTY session lookup (explicit, or speculative for instant connections)
3. ssh_config overlay when the OPENSSH-CONFIG flag is on
4. $USER placeholder resolution
5. Private key loading
6. Prompts for host, username and password, then passphrase handling
7. Agent, agent forwarding and fallback password policy
8. Host and port validation

A calculation either returns a fully resolved record or raises; the
input record is never modified.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from nbs_sshfs.auth import PAGEANT, read_key_file
from nbs_sshfs.errors import (
    ConfigurationRequired,
    ConfigValueError,
    ErrorContext,
    NoAuthenticationMethod,
    PromptCancelled,
    SessionStoreError,
)
from nbs_sshfs.events import EventEmitter, EventType
from nbs_sshfs.flags import FlagStore
from nbs_sshfs.platform import get_default_ssh_config_paths, get_local_user
from nbs_sshfs.prompts import NullPrompter, Prompter
from nbs_sshfs.records import (
    USERNAME_PLACEHOLDER,
    ConfigRecord,
    ProxyConfig,
    ProxyType,
    ResolutionState,
    censor_config,
    replace_variables,
)
from nbs_sshfs.session_store import PROXY_METHODS, PuttySession, SessionStore, find_session
from nbs_sshfs.ssh_config import SSHConfigHolder, build_holder, fill_config_record
from nbs_sshfs.validation import validate_hostname, validate_port, validate_username

log = logging.getLogger("nbs_sshfs.calculator")

USER_PLACEHOLDER = "$USER"


def _is_placeholder(username: object) -> bool:
    return username in (USERNAME_PLACEHOLDER, USER_PLACEHOLDER)


class ConnectionCalculator:
    """
    Calculates connection records.

    Args:
        prompter: Asked for missing values (default: dismisses everything)
        session_store: PuTTY sessions source (None disables session lookup)
        flags: Global feature flags
        ssh_config: A prebuilt holder, or None to read ssh_config_paths
            on every calculation that needs the overlay
        ssh_config_paths: Files for the overlay (default ~/.ssh/config
            and the system ssh_config)
        env: Environment for $NAME substitution (default os.environ)
        emitter: Receives a RESOLVE event per calculated record
    """

    def __init__(
        self,
        prompter: Prompter | None = None,
        session_store: SessionStore | None = None,
        flags: FlagStore | None = None,
        ssh_config: SSHConfigHolder | None = None,
        ssh_config_paths: Sequence[str | Path] | None = None,
        env: Mapping[str, str] | None = None,
        emitter: EventEmitter | None = None,
        local_user: Callable[[], str] = get_local_user,
    ) -> None:
        self._prompter = prompter or NullPrompter()
        self._session_store = session_store
        self._flags = flags or FlagStore()
        self._ssh_config = ssh_config
        self._ssh_config_paths = ssh_config_paths
        self._env = os.environ if env is None else env
        self._emitter = emitter
        self._local_user = local_user

    @property
    def prompter(self) -> Prompter:
        return self._prompter

    @property
    def flags(self) -> FlagStore:
        return self._flags

    def flag_boolean(self, name: str, missing: bool, config: ConfigRecord) -> tuple[bool, str]:
        """
        Look up a feature flag as a boolean, with the config's own flags applied.

        Raises:
            ConfigValueError: The flag holds something other than a boolean
        """
        try:
            return self._flags.get_flag_boolean(name, missing, config.flags)
        except ValueError as e:
            raise ConfigValueError(
                f"Invalid value for flag {name} in config '{config.name}': {e}",
                ErrorContext(config_name=config.name, original_error=str(e)),
            ) from e

    async def calculate(self, record: ConfigRecord) -> ConfigRecord:
        """
        Calculate a record.

        Calculating an already calculated record returns it unchanged.
        Otherwise the work happens on a copy and the input is left as is,
        so one record can be calculated several times at once.

        Raises:
            SecretError: A key could not be read or a prompt was dismissed
            SessionStoreError: An explicitly requested session is unusable
            ConfigValueError: Host or port are invalid, or a flag is not a boolean
        """
        if record.state is ResolutionState.RESOLVED:
            return record
        config = record.clone()
        config.state = ResolutionState.RESOLVING
        await self._calculate(config)
        config.state = ResolutionState.RESOLVED
        config.calculated = config
        log.debug("Calculated config %s: %s", config.name, censor_config(config))
        if self._emitter:
            self._emitter.emit(EventType.RESOLVE, config=censor_config(config))
        return config

    async def _calculate(self, config: ConfigRecord) -> None:
        context = ErrorContext(config_name=config.name)

        # Variables
        if isinstance(config.host, str):
            config.host = replace_variables(config.host, self._env)
        if isinstance(config.port, str):
            config.port = replace_variables(config.port, self._env) or None
        if config.username == USERNAME_PLACEHOLDER:
            config.username = USER_PLACEHOLDER
        elif isinstance(config.username, str) and not _is_placeholder(config.username):
            config.username = replace_variables(config.username, self._env)
        config.agent = replace_variables(config.agent, self._env) or self._env.get("SSH_AUTH_SOCK") or None
        config.private_key_path = replace_variables(config.private_key_path, self._env) or None

        # Session store
        if config.putty is not None and config.putty is not False:
            await self._apply_session(config, speculative=False)
        elif config.putty is None and config.instant_connection and isinstance(config.host, str):
            await self._apply_session(config, speculative=True)

        # ssh_config overlay
        use_openssh_config, origin = self.flag_boolean(
            "OPENSSH-CONFIG", bool(config.instant_connection), config
        )
        if use_openssh_config and isinstance(config.host, str) and config.host:
            log.debug("Applying ssh_config overlay to %s (flag origin: %s)", config.name, origin)
            holder = await self._get_ssh_config()
            fill_config_record(config, holder, self._local_user())

        if _is_placeholder(config.username):
            config.username = self._local_user()

        # Key
        if config.private_key_path and config.private_key is None:
            config.private_key = await asyncio.to_thread(read_key_file, config.private_key_path)

        # Prompts
        if not config.host or config.host is True:
            config.host = await self._ask("host", "Host to connect to", "Host")
        if not config.username or config.username is True:
            config.username = await self._ask("username", "Username to log in with", "Username")
        if config.password is True:
            config.password = await self._ask(
                "password", "Password for the provided username", "Password", password=True
            )
        if config.password:
            config.agent = None

        if config.passphrase is True:
            if config.private_key is not None:
                config.passphrase = await self._ask(
                    "passphrase", "Passphrase for the provided private key", "Passphrase", password=True
                )
            else:
                answer = await self._prompter.choose(
                    "The field 'passphrase' was set to true, but no key was provided",
                    ["Configure", "Ignore"],
                )
                if answer == "Configure":
                    raise ConfigurationRequired(
                        f"Config '{config.name}' needs a private key for its passphrase",
                        context,
                    )
                config.passphrase = None

        if not config.agent:
            config.agent_forward = False

        if config.private_key is None and not config.agent and not config.password:
            if config.password_auth is False:
                if config.try_keyboard is False:
                    raise NoAuthenticationMethod(
                        f"Config '{config.name}' has no key, agent or password to authenticate with",
                        context,
                    )
            else:
                config.password = await self._ask(
                    "password", "Password for the provided username", "Password", password=True
                )

        # Validation
        try:
            validate_hostname(config.host)
            validate_username(config.username)
            if config.port is not None:
                config.port = validate_port(config.port)
        except ValueError as e:
            raise ConfigValueError(str(e), ErrorContext(config_name=config.name, host=str(config.host))) from e

    async def _ask(self, field_name: str, prompt: str, placeholder: str, password: bool = False) -> str:
        answer = await self._prompter.ask(prompt, placeholder, password=password)
        if answer is None:
            raise PromptCancelled(f"Prompt for {field_name} was dismissed", field_name=field_name)
        return answer

    async def _get_ssh_config(self) -> SSHConfigHolder:
        if self._ssh_config is not None:
            return self._ssh_config
        paths = self._ssh_config_paths
        if paths is None:
            paths = get_default_ssh_config_paths()
        return await asyncio.to_thread(build_holder, list(paths))

    async def _apply_session(self, config: ConfigRecord, speculative: bool) -> None:
        """
        Fill the record from a PuTTY session.

        A speculative lookup that finds nothing usable is a no-op.
        """
        if self._session_store is None:
            if speculative:
                return
            raise SessionStoreError(
                "A PuTTY session was requested but no session store is available",
                ErrorContext(config_name=config.name),
            )

        name_only = True
        if speculative or config.putty is True:
            if not isinstance(config.host, str) or not config.host:
                raise SessionStoreError(
                    "'putty' was true but 'host' is empty/missing",
                    ErrorContext(config_name=config.name),
                )
            name = config.host
            name_only = False
        else:
            name = replace_variables(str(config.putty), self._env)

        username = None if _is_placeholder(config.username) or not isinstance(config.username, str) else config.username
        sessions = await asyncio.to_thread(self._session_store.get_sessions)
        session = find_session(sessions, name, config.host if isinstance(config.host, str) else None, username, name_only)

        if session is None:
            if speculative:
                log.debug("No PuTTY session found for %s", name)
                return
            raise SessionStoreError(
                f"Couldn't find the requested PuTTY session '{name}'",
                ErrorContext(config_name=config.name),
            )
        if session.protocol != "ssh":
            if speculative:
                log.debug("Ignoring non-SSH PuTTY session %s", session.name)
                return
            raise SessionStoreError(
                f"The requested PuTTY session '{session.name}' isn't a SSH session",
                ErrorContext(config_name=config.name),
            )
        self._fill_from_session(config, session)

    def _fill_from_session(self, config: ConfigRecord, session: PuttySession) -> None:
        context = ErrorContext(config_name=config.name)
        session_user: str | None = session.username
        session_host = session.hostname
        if session_host and "@" in session_host[1:]:
            at = session_host.index("@")
            session_user = session_user or session_host[:at]
            session_host = session_host[at + 1:]

        if not config.username or _is_placeholder(config.username) or config.username is True:
            if session_user:
                config.username = session_user
        if not config.host or config.host is True:
            config.host = session_host
        if config.port is None:
            config.port = session.portnumber
        if not config.agent and session.tryagent:
            config.agent = PAGEANT
        if session.usernamefromenvironment:
            username = self._env.get("USERNAME") or self._env.get("USER")
            if not username:
                raise SessionStoreError(
                    "Trying to use the system username, but $USERNAME or $USER is missing",
                    context,
                )
            config.username = username
        if not config.private_key_path and not config.agent and session.publickeyfile:
            config.private_key_path = session.publickeyfile

        if config.proxy is None and config.hop is None and session.proxymethod:
            method = PROXY_METHODS[session.proxymethod] if 0 < session.proxymethod < len(PROXY_METHODS) else None
            if method not in ("socks4", "socks5", "http"):
                raise SessionStoreError(
                    f"The PuTTY session '{session.name}' uses an unsupported proxy method",
                    context,
                )
            if not session.proxyhost:
                raise SessionStoreError(
                    "Proxymethod is SOCKS 4/5 or HTTP but 'proxyhost' is missing",
                    context,
                )
            config.proxy = ProxyConfig(
                type=ProxyType(method),
                host=session.proxyhost,
                port=session.proxyport,
            )
        log.debug("Filled %s from PuTTY session %s", config.name, session.name)
