"""
Structured events for connection setup.

Event types:
- RESOLVE: A record was calculated (secrets censored)
- TRANSPORT: The byte stream for the SSH handshake was established
- CONNECT: SSH connection initiated/established
- BOOTSTRAP: Sudo/SFTP handshake state transition
- SFTP: SFTP client ready
- DISCONNECT: Connection closed
- ERROR: Any error condition

All events include:
- timestamp: Unix timestamp in milliseconds
- event_type: One of the above types
- data: Event-specific structured data, never containing secrets
"""
from __future__ import annotations

import json
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from nbs_sshfs.records import CENSORED

# Keys whose values never leave the process
SECRET_KEYS = frozenset({"password", "passphrase", "private_key", "privateKey"})


class EventType(str, Enum):
    RESOLVE = "RESOLVE"
    TRANSPORT = "TRANSPORT"
    CONNECT = "CONNECT"
    BOOTSTRAP = "BOOTSTRAP"
    SFTP = "SFTP"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


def _scrub(value: Any) -> Any:
    """Censor secret values nested anywhere in event data."""
    if isinstance(value, dict):
        return {
            key: (CENSORED if key in SECRET_KEYS and isinstance(item, (str, bytes)) else _scrub(item))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    return value


@dataclass
class Event:
    """
    A single structured event.

    - event_type: The category of event
    - timestamp: When the event occurred (Unix ms)
    - data: Event-specific structured data
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> Event:
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """Collects events in memory for testing and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Appends events to a JSONL file, one JSON object per line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> JSONLEventWriter:
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Dispatches events to an in-memory collector and/or a JSONL file.

    Data passed to emit() is scrubbed of secrets before dispatch.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create and emit an event.

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=_scrub(data))

        if self._collector:
            self._collector.emit(event)
        if self._jsonl_writer:
            self._jsonl_writer.emit(event)
        return event

    def close(self) -> None:
        if self._jsonl_writer:
            self._jsonl_writer.close()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Context manager for timing an operation.

        Emits the event on exit with duration_ms added to data.

        Usage:
            with emitter.timed_event(EventType.TRANSPORT, kind="direct") as data:
                sock = await open_socket()
                data["peer"] = sock.getpeername()
        """
        start_ms = time.time() * 1000
        event_data = dict(initial_data)
        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.time() * 1000) - start_ms
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read all events from a JSONL file."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_json(line))
    return events
