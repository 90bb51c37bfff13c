"""
Byte streams for the SSH handshake.

A calculated record is turned into one of:
- a hop: an SSH connection to another config, tunnelled through with
  asyncssh's tunnel= option
- a proxy: SOCKS4/SOCKS5/HTTP CONNECT socket, or a proxy command
- a direct TCP socket to host:port (default port 22)

Hop connections are shared through a HopPool and torn down when their
last lease is released.
"""
from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import asyncssh

from nbs_sshfs.errors import (
    ErrorContext,
    ResolutionError,
    SecretError,
    SSHFSError,
    TransportError,
)
from nbs_sshfs.events import EventEmitter, EventType
from nbs_sshfs.proxy import ProxyCommandProcess, connect_socket, open_proxy_socket
from nbs_sshfs.records import ConfigRecord, ProxyType, parse_connection_string

log = logging.getLogger("nbs_sshfs.transport")

DEFAULT_PORT = 22


class HopClient(Protocol):
    """An established hop connection, as produced by a hop factory."""

    @property
    def ssh(self) -> asyncssh.SSHClientConnection: ...

    @property
    def closed(self) -> bool: ...

    async def close(self) -> None: ...


HopFactory = Callable[[ConfigRecord, Sequence[str]], Awaitable[HopClient]]


@dataclass
class _HopEntry:
    future: asyncio.Future
    refs: int = 0


def _is_dead(entry: _HopEntry) -> bool:
    future = entry.future
    if not future.done() or future.cancelled() or future.exception() is not None:
        return False
    return future.result().closed


class HopLease:
    """One consumer's claim on a shared hop connection."""

    def __init__(self, pool: HopPool, key: str, entry: _HopEntry, client: HopClient) -> None:
        self._pool = pool
        self._key = key
        self._entry = entry
        self.client = client
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._pool._release(self._key, self._entry)


class HopPool:
    """
    Reference-counted hop connections.

    Concurrent acquires of the same key share one connection attempt. The
    connection is closed when the last lease is released. A hop whose
    connection has already closed is never handed out again.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _HopEntry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def refcount(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.refs if entry else 0

    async def acquire(self, key: str, factory: Callable[[], Awaitable[HopClient]]) -> HopLease:
        entry = self._entries.get(key)
        if entry is not None and _is_dead(entry):
            log.info("Hop %s closed, reconnecting", key)
            del self._entries[key]
            entry = None
        if entry is None:
            entry = _HopEntry(asyncio.ensure_future(factory()))
            self._entries[key] = entry
        entry.refs += 1
        try:
            client = await asyncio.shield(entry.future)
        except BaseException:
            entry.refs -= 1
            if self._entries.get(key) is entry and (entry.future.done() or entry.refs == 0):
                del self._entries[key]
                if not entry.future.done():
                    entry.future.cancel()
            raise
        log.debug("Hop %s leased (refs=%d)", key, entry.refs)
        return HopLease(self, key, entry, client)

    async def _release(self, key: str, entry: _HopEntry) -> None:
        entry.refs -= 1
        log.debug("Hop %s released (refs=%d)", key, entry.refs)
        if entry.refs > 0:
            return
        if self._entries.get(key) is entry:
            del self._entries[key]
        client: HopClient = entry.future.result()
        await client.close()

    async def close_all(self) -> None:
        """Close every hop regardless of outstanding leases."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if entry.future.done() and not entry.future.cancelled() and entry.future.exception() is None:
                await entry.future.result().close()
            elif not entry.future.done():
                entry.future.cancel()


class _HopTunnel:
    """
    asyncssh tunnel= object that reports channel failures as transport errors.

    Everything else is delegated to the hop's connection.
    """

    def __init__(self, conn: asyncssh.SSHClientConnection, via: str) -> None:
        self._conn = conn
        self._via = via

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)

    async def create_connection(self, session_factory: Any, host: str, port: int, *args: Any, **kwargs: Any) -> Any:
        try:
            return await self._conn.create_connection(session_factory, host, port, *args, **kwargs)
        except (asyncssh.ChannelOpenError, OSError) as e:
            raise TransportError(
                f"Couldn't open a channel to {host}:{port} through {self._via}: {e}",
                via=self._via,
                context=ErrorContext(host=host, port=port, original_error=str(e)),
            ) from e


@dataclass
class TransportStream:
    """
    The established stream, ready to be passed to asyncssh.connect().

    - kind: direct, socks4, socks5, http, command or hop
    - via: Human readable description of the link, used in errors
    """
    kind: str
    via: str
    host: str
    port: int
    sock: socket.socket | None = None
    tunnel: _HopTunnel | None = None
    process: ProxyCommandProcess | None = field(default=None, repr=False)
    lease: HopLease | None = field(default=None, repr=False)
    closed: bool = False

    def connect_options(self) -> dict[str, Any]:
        if self.tunnel is not None:
            return {"host": self.host, "port": self.port, "tunnel": self.tunnel}
        assert self.sock is not None, "stream has neither a socket nor a tunnel"
        return {"host": self.host, "port": self.port, "sock": self.sock}

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.process is not None:
            await self.process.close()
        elif self.sock is not None:
            self.sock.close()
        if self.lease is not None:
            await self.lease.release()


def _split_hops(hop: str) -> list[str]:
    return [name.strip() for name in hop.split(",") if name.strip()]


class TransportChain:
    """
    Opens streams for calculated records.

    Args:
        hop_factory: Connects a hop record; receives the record and the
            chain of config names already being connected
        get_config: Looks up hop targets by config name (connection
            strings are accepted as a fallback)
        pool: Shared hop connections
        emitter: Receives TRANSPORT and ERROR events
    """

    def __init__(
        self,
        hop_factory: HopFactory,
        get_config: Callable[[str], ConfigRecord | None] | None = None,
        pool: HopPool | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._hop_factory = hop_factory
        self._get_config = get_config
        self.pool = pool or HopPool()
        self._emitter = emitter

    def resolve_hop(self, names: Sequence[str], chain: Sequence[str]) -> ConfigRecord:
        """
        Resolve the last entry of a hop list into a record.

        Earlier entries become that record's own hop, so "a,b" reaches b
        through a.
        """
        name = names[-1]
        record = self._get_config(name) if self._get_config else None
        if record is None:
            parsed = parse_connection_string(name)
            if isinstance(parsed, str):
                raise ResolutionError(
                    f"Hop '{name}' is neither a known config nor a connection string: {parsed}",
                    chain=[*chain, name],
                    context=ErrorContext(hop=name),
                )
            record = parsed[0]
        record = record.clone()
        if len(names) > 1:
            record.hop = ",".join(names[:-1])
        return record

    async def open_stream(self, config: ConfigRecord, chain: Sequence[str] = ()) -> TransportStream:
        """
        Open the stream for a calculated record.

        Raises:
            ResolutionError: The hop chain is cyclic or names an unknown config
            TransportError: Socket, proxy or hop failure, naming the failing link
        """
        assert isinstance(config.host, str) and config.host, "config must be calculated"
        host = config.host
        port = int(config.port or DEFAULT_PORT)
        chain = [*chain, config.name]
        loop = asyncio.get_running_loop()
        start = loop.time()

        if config.hop:
            stream = await self._open_hop(config, host, port, chain)
        elif config.proxy is not None:
            stream = await self._open_proxy(config, host, port)
        else:
            stream = await self._open_direct(host, port)

        log.info("Transport to %s:%d established via %s", host, port, stream.via)
        if self._emitter:
            self._emitter.emit(
                EventType.TRANSPORT,
                config=config.name,
                kind=stream.kind,
                via=stream.via,
                host=host,
                port=port,
                duration_ms=(loop.time() - start) * 1000,
            )
        return stream

    async def _open_direct(self, host: str, port: int) -> TransportStream:
        via = f"direct connection to {host}:{port}"
        try:
            sock = await connect_socket(host, port)
        except OSError as e:
            self._emit_error("transport_failed", via, e)
            raise TransportError(
                f"Couldn't connect to {host}:{port}: {e}",
                via=via,
                context=ErrorContext(host=host, port=port, original_error=str(e)),
            ) from e
        return TransportStream(kind="direct", via=via, host=host, port=port, sock=sock)

    async def _open_proxy(self, config: ConfigRecord, host: str, port: int) -> TransportStream:
        proxy = config.proxy
        assert proxy is not None
        via = proxy.describe()
        try:
            if proxy.type is ProxyType.COMMAND:
                process = ProxyCommandProcess(proxy.command or "")
                await process.start()
                return TransportStream(
                    kind="command", via=via, host=host, port=port,
                    sock=process.get_socket(), process=process,
                )
            sock = await open_proxy_socket(proxy, host, port)
        except TransportError as e:
            e.context.config_name = e.context.config_name or config.name
            self._emit_error("proxy_failed", via, e)
            raise
        return TransportStream(kind=proxy.type.value, via=via, host=host, port=port, sock=sock)

    async def _open_hop(
        self,
        config: ConfigRecord,
        host: str,
        port: int,
        chain: Sequence[str],
    ) -> TransportStream:
        assert config.hop
        names = _split_hops(config.hop)
        if not names:
            raise ResolutionError(
                f"Config '{config.name}' has an empty hop",
                chain=list(chain),
                context=ErrorContext(config_name=config.name),
            )
        hop_name = names[-1]
        lowered = [name.lower() for name in chain]
        if hop_name.lower() in lowered:
            raise ResolutionError(
                f"Cyclic hop reference: {' -> '.join([*chain, hop_name])}",
                chain=[*chain, hop_name],
                context=ErrorContext(config_name=config.name, hop=hop_name),
            )
        record = self.resolve_hop(names, chain)
        via = f"hop '{hop_name}'"

        async def connect() -> HopClient:
            return await self._hop_factory(record, chain)

        try:
            lease = await self.pool.acquire(",".join(names).lower(), connect)
        except (ResolutionError, SecretError) as e:
            e.context.hop = e.context.hop or hop_name
            raise
        except SSHFSError as e:
            self._emit_error("hop_failed", via, e)
            raise TransportError(
                f"Couldn't connect to {via}: {e}",
                via=via,
                context=ErrorContext(
                    config_name=config.name, hop=hop_name, original_error=str(e),
                ),
            ) from e
        return TransportStream(
            kind="hop", via=via, host=host, port=port,
            tunnel=_HopTunnel(lease.client.ssh, via), lease=lease,
        )

    def _emit_error(self, error_type: str, via: str, exc: BaseException) -> None:
        if self._emitter:
            self._emitter.emit(EventType.ERROR, error_type=error_type, via=via, message=str(exc))
