"""
Connection facade: from a config name to a ready SFTP client.

Provides:
- SSHFSConnector: calculate -> open_stream -> asyncssh.connect -> get_sftp
- SSHFSConnection: An established connection and the stream it runs over
- SFTPSession: Async context manager owning an SFTP client and its connection

Usage:
    connector = SSHFSConnector(resolver=resolver, calculator=calculator)
    async with await connector.open_sftp("my-server") as session:
        print(await session.sftp.listdir(session.path or "."))
    await connector.close()

All steps emit events through the connector's EventEmitter:
- RESOLVE, TRANSPORT, CONNECT, BOOTSTRAP, SFTP, DISCONNECT, ERROR
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import asyncssh

from nbs_sshfs.auth import auth_methods, build_auth_options
from nbs_sshfs.bootstrap import SessionBootstrap, run_bootstrap
from nbs_sshfs.calculator import ConnectionCalculator
from nbs_sshfs.errors import (
    AuthFailed,
    ConfigValueError,
    ConnectError,
    ConnectionRefused,
    ConnectionTimeout,
    ErrorContext,
    HostKeyMismatch,
    HostUnreachable,
    SSHFSError,
)
from nbs_sshfs.events import EventEmitter, EventType
from nbs_sshfs.prompts import Prompter
from nbs_sshfs.records import ConfigRecord, parse_connection_string
from nbs_sshfs.resolver import ConfigResolver
from nbs_sshfs.transport import HopPool, TransportChain, TransportStream

log = logging.getLogger("nbs_sshfs.connection")

KEEPALIVE_INTERVAL = 30
DH_GROUP_EXCHANGE_KEX = "-diffie-hellman-group-exchange-sha256,diffie-hellman-group-exchange-sha1"
COMPRESSION_ALGS = ["zlib@openssh.com", "zlib"]


@dataclass
class Target:
    """A resolved connection target: the record plus an optional remote path."""
    record: ConfigRecord
    path: str | None = None


class _PromptingSSHClient(asyncssh.SSHClient):
    """
    SSH client answering keyboard-interactive challenges.

    A lone hidden prompt is answered with the configured password the
    first time; everything else goes to the prompter.
    """

    def __init__(self, prompter: Prompter, password: str | None = None) -> None:
        super().__init__()
        self._prompter = prompter
        self._password = password
        self._challenge_count = 0

    def kbdint_auth_requested(self) -> str | None:
        return ""

    async def kbdint_challenge_received(
        self,
        name: str,
        instructions: str,
        lang: str,
        prompts: list[tuple[str, bool]],
    ) -> list[str] | None:
        self._challenge_count += 1
        if not prompts:
            return []
        if (
            self._password is not None
            and self._challenge_count == 1
            and len(prompts) == 1
            and not prompts[0][1]
        ):
            return [self._password]

        responses = []
        for prompt, echo in prompts:
            text = prompt.strip().rstrip(":") or "Response"
            if instructions:
                text = f"{instructions.strip()}\n{text}"
            answer = await self._prompter.ask(text, name or None, password=not echo)
            if answer is None:
                return None
            responses.append(answer)
        return responses


class SSHFSConnection:
    """
    An established SSH connection and the transport stream below it.

    The stream (and any hop lease it holds) is released as soon as the
    SSH connection closes, whether through close() or from the far end.
    """

    def __init__(
        self,
        config: ConfigRecord,
        ssh: asyncssh.SSHClientConnection,
        stream: TransportStream,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.config = config
        self._ssh = ssh
        self.stream = stream
        self._emitter = emitter
        self._closed = False
        self._watcher = asyncio.ensure_future(self._release_when_closed())

    @property
    def ssh(self) -> asyncssh.SSHClientConnection:
        return self._ssh

    @property
    def closed(self) -> bool:
        return self._closed or self._ssh.is_closed()

    def _disconnected(self, reason: str) -> None:
        self._closed = True
        if self._emitter:
            self._emitter.emit(
                EventType.DISCONNECT,
                config=self.config.name,
                host=self.stream.host,
                port=self.stream.port,
                reason=reason,
            )

    async def _release_when_closed(self) -> None:
        await self._ssh.wait_closed()
        if not self._closed:
            log.info("Connection to %s closed by the remote end", self.config.name)
            self._disconnected("connection_lost")
        await self.stream.close()

    async def close(self) -> None:
        """Close the SSH connection, then the stream (releasing any hop lease)."""
        if not self._closed:
            self._disconnected("closed")
            self._ssh.close()
        await self._watcher

    async def __aenter__(self) -> SSHFSConnection:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class SFTPSession:
    """
    A ready SFTP client.

    Closing the session closes the SFTP client and its connection.
    """

    def __init__(
        self,
        connection: SSHFSConnection,
        sftp: asyncssh.SFTPClient,
        path: str | None = None,
    ) -> None:
        self.connection = connection
        self.sftp = sftp
        self.path = path

    @property
    def config(self) -> ConfigRecord:
        return self.connection.config

    async def close(self) -> None:
        self.sftp.exit()
        await self.sftp.wait_closed()
        await self.connection.close()

    async def __aenter__(self) -> SFTPSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class SSHFSConnector:
    """
    Turns config names into connections.

    Args:
        resolver: Loaded configs; hop names are looked up here
        calculator: Fills in secrets and overlays
        emitter: Receives events for every step
        known_hosts: Passed to asyncssh; None disables host key checks
        pool: Shared hop connections
    """

    def __init__(
        self,
        resolver: ConfigResolver | None = None,
        calculator: ConnectionCalculator | None = None,
        emitter: EventEmitter | None = None,
        known_hosts: Any = (),
        pool: HopPool | None = None,
    ) -> None:
        self.resolver = resolver
        self.calculator = calculator or ConnectionCalculator(emitter=emitter)
        self._emitter = emitter
        self._known_hosts = known_hosts
        self.transport = TransportChain(
            hop_factory=self._connect_hop,
            get_config=resolver.get_config if resolver else None,
            pool=pool,
            emitter=emitter,
        )

    def resolve_target(self, target: str | ConfigRecord) -> Target:
        """
        Resolve a config name or connection string once, at the boundary.

        Raises:
            ConfigValueError: Neither a known config nor a valid connection string
        """
        if isinstance(target, ConfigRecord):
            return Target(target)
        if self.resolver is not None:
            record = self.resolver.snapshot.get(target)
            if record is not None:
                return Target(record)
        parsed = parse_connection_string(target)
        if isinstance(parsed, str):
            raise ConfigValueError(
                f"Unknown config or invalid connection string '{target}': {parsed}",
                ErrorContext(config_name=target),
            )
        return Target(*parsed)

    async def connect(
        self,
        target: str | ConfigRecord,
        chain: Sequence[str] = (),
    ) -> SSHFSConnection:
        """
        Calculate the target, open its stream and run the SSH handshake.

        Raises:
            SSHFSError: Any step failed; the stream is closed again
        """
        config = await self.calculator.calculate(self.resolve_target(target).record)
        stream = await self.transport.open_stream(config, chain)
        try:
            ssh = await self._handshake(config, stream)
        except BaseException:
            await stream.close()
            raise
        return SSHFSConnection(config, ssh, stream, self._emitter)

    async def _connect_hop(self, record: ConfigRecord, chain: Sequence[str]) -> SSHFSConnection:
        log.info("Connecting to hop %s", record.name)
        return await self.connect(record, chain)

    def _connect_options(self, config: ConfigRecord, stream: TransportStream) -> dict[str, Any]:
        options: dict[str, Any] = {
            **stream.connect_options(),
            **build_auth_options(config),
            "known_hosts": self._known_hosts,
            # ssh_config is applied by the calculator
            "config": [],
            "keepalive_interval": KEEPALIVE_INTERVAL,
        }
        if config.ready_timeout:
            options["connect_timeout"] = config.ready_timeout / 1000
        if config.compress:
            options["compression_algs"] = COMPRESSION_ALGS

        drop_dhge, origin = self.calculator.flag_boolean("DF-GE", False, config)
        if drop_dhge:
            log.info("Disabling diffie-hellman-group-exchange kex (flag origin: %s)", origin)
            options["kex_algs"] = DH_GROUP_EXCHANGE_KEX
        debug_ssh2, _ = self.calculator.flag_boolean("DEBUG_SSH2", False, config)
        if debug_ssh2 or config.debug:
            # asyncssh debug levels apply to the whole process
            asyncssh.set_debug_level(2)
            logging.getLogger("asyncssh").setLevel(logging.DEBUG)
        return options

    async def _handshake(
        self,
        config: ConfigRecord,
        stream: TransportStream,
    ) -> asyncssh.SSHClientConnection:
        options = self._connect_options(config, stream)
        password = config.password if isinstance(config.password, str) else None
        prompter = self.calculator.prompter
        context = ErrorContext(
            config_name=config.name,
            host=stream.host,
            port=stream.port,
            username=config.username if isinstance(config.username, str) else None,
        )
        connect_data = {
            "config": config.name,
            "host": stream.host,
            "port": stream.port,
            "via": stream.via,
        }
        methods = [method.value for method in auth_methods(config)]
        log.debug("Offering %s to %s", ", ".join(methods) or "no methods", config.name)
        if self._emitter:
            self._emitter.emit(EventType.CONNECT, status="initiating", auth_methods=methods, **connect_data)

        try:
            ssh = await asyncssh.connect(
                client_factory=lambda: _PromptingSSHClient(prompter, password),
                **options,
            )
        except SSHFSError as e:
            self._emit_error(e, connect_data)
            raise
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            mapped = _map_exception(e, context)
            self._emit_error(mapped, connect_data)
            raise mapped from e

        if self._emitter:
            self._emitter.emit(EventType.CONNECT, status="connected", **connect_data)
        return ssh

    async def get_sftp(self, connection: SSHFSConnection) -> asyncssh.SFTPClient:
        """
        Start SFTP on a connection.

        A custom sftp command or sudo goes through the shell bootstrap,
        otherwise the standard subsystem is requested.
        """
        config = connection.config
        if config.sftp_command or config.sftp_sudo:
            machine = SessionBootstrap(
                config.sftp_command,
                config.sftp_sudo,
                config.password if isinstance(config.password, str) else None,
            )
            return await run_bootstrap(
                connection.ssh,
                machine,
                self.calculator.prompter,
                self._emitter,
                config.name,
            )
        if not self._emitter:
            return await connection.ssh.start_sftp_client()
        with self._emitter.timed_event(EventType.SFTP, config=config.name, subsystem=True) as event_data:
            try:
                return await connection.ssh.start_sftp_client()
            except Exception as e:
                event_data["error"] = str(e)
                raise

    async def open_sftp(self, target: str | ConfigRecord) -> SFTPSession:
        """Connect and start SFTP; the path of a connection string is kept."""
        resolved = self.resolve_target(target)
        connection = await self.connect(resolved.record)
        try:
            sftp = await self.get_sftp(connection)
        except BaseException:
            await connection.close()
            raise
        return SFTPSession(connection, sftp, resolved.path or connection.config.root)

    async def close(self) -> None:
        """Close every hop still held by the pool."""
        await self.transport.pool.close_all()

    def _emit_error(self, error: SSHFSError, data: dict[str, Any]) -> None:
        if self._emitter:
            self._emitter.emit(
                EventType.ERROR,
                error_type=error.error_type,
                message=str(error),
                **data,
            )


def _map_exception(exc: BaseException, ctx: ErrorContext) -> ConnectError:
    """Map asyncssh and socket exceptions to our error taxonomy."""
    ctx.original_error = str(exc)

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed: {exc}", context=ctx)

    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return HostKeyMismatch(f"Host key verification failed: {exc}", context=ctx)

    if isinstance(exc, asyncio.TimeoutError):
        return ConnectionTimeout(f"Connection timed out: {str(exc) or 'no response'}", context=ctx)

    if isinstance(exc, OSError):
        error_str = str(exc).lower()
        if "connection refused" in error_str:
            return ConnectionRefused(f"Connection refused: {exc}", context=ctx)
        if "timed out" in error_str or "timeout" in error_str:
            return ConnectionTimeout(f"Connection timed out: {exc}", context=ctx)
        if "unreachable" in error_str or "no route" in error_str:
            return HostUnreachable(f"Host unreachable: {exc}", context=ctx)

    if isinstance(exc, asyncssh.ConnectionLost):
        return ConnectError(f"Connection lost: {exc}", context=ctx)

    return ConnectError(f"Connection failed: {exc}", context=ctx)
