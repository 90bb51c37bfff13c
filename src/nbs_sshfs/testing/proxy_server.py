"""
Mock SOCKS4/SOCKS5/HTTP CONNECT proxy for integration testing.

The proxy accepts one tunnel request per client, records it, connects to
the requested target and pipes bytes both ways.

Example:
    async with MockProxyServer(ProxyType.SOCKS5) as proxy:
        config = ConfigRecord(name="behind-proxy", host="127.0.0.1", port=ssh_port,
                              proxy=ProxyConfig(ProxyType.SOCKS5, "127.0.0.1", proxy.port))
"""
from __future__ import annotations

import asyncio
import socket
import struct
from dataclasses import dataclass
from typing import Any

from nbs_sshfs.records import ProxyType


@dataclass
class ProxyRequest:
    """A tunnel request the proxy received."""
    host: str
    port: int


class MockProxyServer:
    """
    Async context manager running a proxy on 127.0.0.1, port 0.

    Args:
        kind: SOCKS4, SOCKS5 or HTTP
        refuse: Answer every request with a failure instead of connecting
    """

    def __init__(self, kind: ProxyType, refuse: bool = False) -> None:
        assert kind is not ProxyType.COMMAND, "a proxy command has no server"
        self.kind = kind
        self.refuse = refuse
        self.requests: list[ProxyRequest] = []
        self._server: asyncio.AbstractServer | None = None
        self._tasks: set[asyncio.Task] = set()
        self._port = 0

    @property
    def port(self) -> int:
        assert self._port > 0, "Port not assigned - server not started"
        return self._port

    async def __aenter__(self) -> MockProxyServer:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self._port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for task in list(self._tasks):
            task.cancel()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            if self.kind is ProxyType.SOCKS4:
                request = await self._read_socks4(reader)
            elif self.kind is ProxyType.SOCKS5:
                request = await self._read_socks5(reader, writer)
            else:
                request = await self._read_http(reader)
            self.requests.append(request)

            target = None
            if not self.refuse:
                try:
                    target = await asyncio.open_connection(request.host, request.port)
                except OSError:
                    target = None
            writer.write(self._reply(target is not None))
            await writer.drain()
            if target is None:
                return

            target_reader, target_writer = target
            await asyncio.gather(
                self._pipe(reader, target_writer),
                self._pipe(target_reader, writer),
            )
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def _pipe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()
            if task is not None:
                self._tasks.discard(task)

    async def _read_socks4(self, reader: asyncio.StreamReader) -> ProxyRequest:
        header = await reader.readexactly(8)
        port = struct.unpack(">H", header[2:4])[0]
        address = header[4:8]
        await reader.readuntil(b"\x00")  # user id
        if address[:3] == b"\x00\x00\x00" and address[3] != 0:
            host = (await reader.readuntil(b"\x00"))[:-1].decode("idna")
        else:
            host = socket.inet_ntoa(address)
        return ProxyRequest(host, port)

    async def _read_socks5(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> ProxyRequest:
        _, count = await reader.readexactly(2)
        await reader.readexactly(count)
        writer.write(b"\x05\x00")
        await writer.drain()
        _, _, _, atyp = await reader.readexactly(4)
        if atyp == 1:
            host = socket.inet_ntoa(await reader.readexactly(4))
        elif atyp == 4:
            host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
        else:
            (length,) = await reader.readexactly(1)
            host = (await reader.readexactly(length)).decode("idna")
        port = struct.unpack(">H", await reader.readexactly(2))[0]
        return ProxyRequest(host, port)

    async def _read_http(self, reader: asyncio.StreamReader) -> ProxyRequest:
        head = await reader.readuntil(b"\r\n\r\n")
        request_line = head.split(b"\r\n", 1)[0].decode("latin-1")
        _, target, _ = request_line.split(" ", 2)
        host, _, port = target.rpartition(":")
        return ProxyRequest(host.strip("[]"), int(port))

    def _reply(self, ok: bool) -> bytes:
        if self.kind is ProxyType.SOCKS4:
            return b"\x00" + bytes([0x5A if ok else 0x5B]) + b"\x00" * 6
        if self.kind is ProxyType.SOCKS5:
            return b"\x05" + bytes([0x00 if ok else 0x05]) + b"\x00\x01" + b"\x00" * 6
        if ok:
            return b"HTTP/1.1 200 Connection established\r\n\r\n"
        return b"HTTP/1.1 403 Forbidden\r\nContent-Length: 0\r\n\r\n"
