"""
Pytest fixtures for nbs-sshfs tests.

Provides:
- SSH server fixture (MockSSHServer-based, no Docker required)
- Event capture fixtures for asserting event sequences
- A scripted prompter standing in for the user
- A connector wired to an in-memory resolver
"""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, Callable, Generator

import pytest

if TYPE_CHECKING:
    from nbs_sshfs.connection import SSHFSConnector
    from nbs_sshfs.events import EventCollector, EventEmitter
    from nbs_sshfs.testing.mock_server import MockSSHServer


class ScriptedPrompter:
    """
    Prompter that answers from a script and records what was asked.

    answers maps a word in the prompt text (case-insensitive) to the
    answer; unmatched prompts are dismissed.
    """

    def __init__(
        self,
        answers: dict[str, str | None] | None = None,
        choice: str | None = None,
    ) -> None:
        self.answers = dict(answers or {})
        self.choice = choice
        self.asked: list[tuple[str, str | None, bool]] = []
        self.choices: list[tuple[str, list[str]]] = []

    async def ask(
        self,
        prompt: str,
        placeholder: str | None = None,
        password: bool = False,
    ) -> str | None:
        self.asked.append((prompt, placeholder, password))
        lower = prompt.lower()
        for word, answer in self.answers.items():
            if word.lower() in lower:
                return answer
        return None

    async def choose(self, message: str, options: Sequence[str]) -> str | None:
        self.choices.append((message, list(options)))
        return self.choice


@pytest.fixture
def prompter_factory() -> Callable[..., ScriptedPrompter]:
    """Build ScriptedPrompters: prompter_factory({"password": "test"})."""
    return ScriptedPrompter


@pytest.fixture
async def mock_ssh_server() -> AsyncGenerator["MockSSHServer", None]:
    """
    Fixture providing a MockSSHServer for integration tests.

    Usage:
        async def test_example(mock_ssh_server):
            record = ConfigRecord(name="mock", host="127.0.0.1",
                                  port=mock_ssh_server.port,
                                  username="test", password="test")
    """
    from nbs_sshfs.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="test",
        password="test",
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
def event_collector() -> Generator["EventCollector", None, None]:
    """
    Fixture for capturing and asserting event sequences.

    Usage:
        def test_example(event_collector):
            emitter = EventEmitter(collector=event_collector)
            ...
            assert event_collector.events[0].event_type == "RESOLVE"
    """
    from nbs_sshfs.events import EventCollector

    collector = EventCollector()
    yield collector
    collector.clear()


@pytest.fixture
def emitter(event_collector: "EventCollector") -> "EventEmitter":
    """EventEmitter feeding the event_collector fixture."""
    from nbs_sshfs.events import EventEmitter

    return EventEmitter(collector=event_collector)


@pytest.fixture
def temp_jsonl_path(tmp_path: Path) -> Path:
    """Provide a temporary path for JSONL event log output."""
    return tmp_path / "events.jsonl"


@pytest.fixture
def connector_factory(
    emitter: "EventEmitter",
) -> Callable[..., "SSHFSConnector"]:
    """
    Build a connector for a list of inline configs.

    The ssh_config overlay reads nothing and the environment is empty,
    so the machine running the tests cannot leak into the results.
    """
    from nbs_sshfs.calculator import ConnectionCalculator
    from nbs_sshfs.connection import SSHFSConnector
    from nbs_sshfs.flags import FlagStore
    from nbs_sshfs.records import ConfigLayer
    from nbs_sshfs.resolver import ConfigResolver
    from nbs_sshfs.ssh_config import parse_contents

    def factory(
        configs: list[dict] | None = None,
        prompter: ScriptedPrompter | None = None,
        flags: Sequence[str] | None = None,
        ssh_config: str = "",
    ) -> SSHFSConnector:
        resolver = ConfigResolver()
        resolver.set_layer(ConfigLayer.GLOBAL, configs or [])
        resolver.reload()
        calculator = ConnectionCalculator(
            prompter=prompter or ScriptedPrompter(),
            flags=FlagStore(global_flags=list(flags or [])),
            ssh_config=parse_contents(ssh_config, "test_ssh_config"),
            env={},
            emitter=emitter,
            local_user=lambda: "localuser",
        )
        return SSHFSConnector(
            resolver=resolver,
            calculator=calculator,
            emitter=emitter,
            known_hosts=None,
        )

    return factory


@pytest.fixture
def unused_port() -> int:
    """A localhost port with nothing listening on it."""
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
async def echo_server() -> AsyncGenerator[int, None]:
    """A localhost TCP echo server; yields its port."""
    import asyncio

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while data := await reader.read(4096):
                writer.write(data)
                await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
