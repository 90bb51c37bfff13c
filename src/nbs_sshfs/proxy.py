"""
Proxy transports for SSH connections.

Provides:
- ProxyCommandProcess: Runs a shell command and bridges stdin/stdout to asyncssh
- open_proxy_socket: SOCKS4(a)/SOCKS5/HTTP CONNECT tunnel as a connected socket

Every function hands back a plain socket that asyncssh.connect() takes
through its sock= option.

Examples:
    # ProxyCommand as found in ssh_config
    ProxyCommand nc -X 5 -x socks-proxy:1080 %h %p

    # Proxy object in a JSON config
    {"proxy": {"type": "socks5", "host": "10.0.0.1", "port": 1080}}
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any

import python_socks
from python_socks.async_.asyncio import Proxy

from nbs_sshfs.errors import ErrorContext, ProxyCommandError, ProxyError
from nbs_sshfs.records import ProxyConfig, ProxyType

log = logging.getLogger("nbs_sshfs.proxy")


class ProxyCommandProcess:
    """
    Manages a ProxyCommand subprocess for SSH transport.

    This class runs a shell command and provides a socket pair where:
    - One end connects to the subprocess stdin/stdout
    - The other end can be used by asyncssh as the transport

    Usage:
        async with ProxyCommandProcess("nc proxy.example.com 22") as proxy:
            conn = await asyncssh.connect(..., sock=proxy.get_socket())
    """

    def __init__(self, command: str) -> None:
        """
        Args:
            command: Shell command to run (tokens should already be expanded)
        """
        if not command or not command.strip():
            raise ProxyCommandError("Empty ProxyCommand", command=command)

        self._command = command
        self._process: asyncio.subprocess.Process | None = None
        self._local_sock: socket.socket | None = None
        self._remote_sock: socket.socket | None = None
        self._bridge_task: asyncio.Task | None = None
        self._closed = False

    @property
    def command(self) -> str:
        return self._command

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Start the ProxyCommand subprocess."""
        assert not self._closed, (
            f"Cannot start ProxyCommand after close() has been called. "
            f"Command: {self._command}"
        )
        if self._process is not None:
            raise RuntimeError("ProxyCommand already started")

        # On Unix: AF_UNIX.  On Windows: socketpair() defaults to AF_INET.
        if hasattr(socket, "AF_UNIX"):
            self._local_sock, self._remote_sock = socket.socketpair(
                socket.AF_UNIX, socket.SOCK_STREAM
            )
        else:
            self._local_sock, self._remote_sock = socket.socketpair()
        self._local_sock.setblocking(False)
        self._remote_sock.setblocking(False)

        try:
            self._process = await asyncio.create_subprocess_shell(
                self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._cleanup_sockets()
            raise ProxyCommandError(
                f"Failed to start ProxyCommand: {e}",
                command=self._command,
            ) from e

        # Give it a brief moment to fail (e.g. command not found)
        await asyncio.sleep(0.05)

        if self._process.returncode is not None:
            stderr = ""
            if self._process.stderr:
                try:
                    stderr = (await self._process.stderr.read()).decode(
                        "utf-8", errors="replace"
                    )
                except OSError as e:
                    stderr = f"<stderr read failed: {e}>"
                    log.debug("Failed to read stderr from ProxyCommand: %s", e)
            self._cleanup_sockets()
            raise ProxyCommandError(
                f"ProxyCommand exited immediately with code {self._process.returncode}",
                command=self._command,
                exit_code=self._process.returncode,
                stderr=stderr,
            )

        self._bridge_task = asyncio.create_task(self._bridge())

    async def _bridge(self) -> None:
        """Bridge data between the socket pair and subprocess stdin/stdout."""
        assert self._process is not None, "_bridge requires a running process"
        assert self._local_sock is not None, "_bridge requires a connected socket"
        assert self._process.stdin is not None and self._process.stdout is not None, \
            "subprocess was not created with stdin/stdout=PIPE"

        loop = asyncio.get_running_loop()
        process = self._process
        local_sock = self._local_sock

        async def socket_to_subprocess() -> None:
            while not self._closed:
                try:
                    data = await loop.sock_recv(local_sock, 65536)
                    if not data:
                        break
                    process.stdin.write(data)
                    await process.stdin.drain()
                except (OSError, ConnectionError):
                    break
            try:
                process.stdin.close()
            except OSError as e:
                log.debug("Error closing subprocess stdin: %s", e)

        async def subprocess_to_socket() -> None:
            while not self._closed:
                try:
                    data = await process.stdout.read(65536)
                    if not data:
                        break
                    await loop.sock_sendall(local_sock, data)
                except (OSError, ConnectionError):
                    break
            # EOF towards asyncssh once the command stops producing output
            try:
                local_sock.shutdown(socket.SHUT_WR)
            except OSError as e:
                log.debug("Error shutting down proxy socket: %s", e)

        async def monitor_process() -> None:
            code = await process.wait()
            log.debug("ProxyCommand %r exited with code %s", self._command, code)

        try:
            await asyncio.gather(
                socket_to_subprocess(),
                subprocess_to_socket(),
                monitor_process(),
            )
        except (OSError, ConnectionError) as e:
            log.debug("Bridge terminated: %s", e)

    def get_socket(self) -> socket.socket:
        """Socket connected to the ProxyCommand's stdin/stdout."""
        if self._remote_sock is None:
            raise RuntimeError("ProxyCommand not started")
        return self._remote_sock

    def _cleanup_sockets(self) -> None:
        for name in ("_local_sock", "_remote_sock"):
            sock = getattr(self, name)
            if sock is not None:
                try:
                    sock.close()
                except OSError as e:
                    log.debug("Error closing socket: %s", e)
                setattr(self, name, None)

    async def close(self) -> None:
        """Close the ProxyCommand subprocess and cleanup."""
        if self._closed:
            return
        self._closed = True

        if self._bridge_task is not None:
            self._bridge_task.cancel()
            try:
                await self._bridge_task
            except asyncio.CancelledError:
                pass
            self._bridge_task = None

        if self._process is not None:
            try:
                if self._process.returncode is None:
                    self._process.terminate()
                    try:
                        await asyncio.wait_for(self._process.wait(), timeout=2.0)
                    except asyncio.TimeoutError:
                        self._process.kill()
                        await self._process.wait()
            except (OSError, ProcessLookupError) as e:
                log.debug("Error terminating ProxyCommand process: %s", e)
            self._process = None

        self._cleanup_sockets()

    async def __aenter__(self) -> ProxyCommandProcess:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Network proxies
# ---------------------------------------------------------------------------

_PROXY_TYPES = {
    ProxyType.SOCKS4: python_socks.ProxyType.SOCKS4,
    ProxyType.SOCKS5: python_socks.ProxyType.SOCKS5,
    ProxyType.HTTP: python_socks.ProxyType.HTTP,
}


async def connect_socket(host: str, port: int) -> socket.socket:
    """
    Open a non-blocking TCP connection.

    Every address the name resolves to is tried in turn.
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    last_error: OSError | None = None
    for family, type_, proto, _, address in infos:
        sock = socket.socket(family, type_, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, address)
            return sock
        except OSError as e:
            sock.close()
            last_error = e
    raise last_error or OSError(f"Could not resolve {host}")


async def _resolve_ip(host: str, port: int) -> str:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"Could not resolve {host}")
    return infos[0][4][0]


async def open_proxy_socket(proxy: ProxyConfig, host: str, port: int) -> socket.socket:
    """
    Connect to host:port through a SOCKS4/SOCKS5/HTTP proxy.

    The proxy hostname is resolved to an address first. Target hostnames
    are handed to the proxy to resolve (SOCKS4a for SOCKS4).

    Raises:
        ProxyError: If the proxy is unreachable or refuses the tunnel
    """
    via = proxy.describe()
    context = ErrorContext(host=host, port=port, proxy=via)
    if proxy.type is ProxyType.COMMAND:
        raise ProxyError("A proxy command has no network endpoint", via=via, context=context)
    if not proxy.host or not proxy.port:
        raise ProxyError(f"Proxy is missing a host or port: {via}", via=via, context=context)

    try:
        address = await _resolve_ip(proxy.host, proxy.port)
        client = Proxy(_PROXY_TYPES[proxy.type], address, proxy.port, rdns=True)
        sock = await client.connect(dest_host=host, dest_port=port)
    except OSError as e:
        # python_socks connection and timeout errors are OSErrors too
        context.original_error = str(e)
        raise ProxyError(f"Couldn't connect to {via}: {e}", via=via, context=context) from e
    except python_socks.ProxyError as e:
        context.original_error = str(e)
        raise ProxyError(
            f"Couldn't reach {host}:{port} through {via}: {e}", via=via, context=context
        ) from e
    log.debug("Tunnel to %s:%d established through %s", host, port, via)
    return sock
