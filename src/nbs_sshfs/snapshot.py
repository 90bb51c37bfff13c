"""
Atomically swappable snapshots with post-swap subscribers.

Process-wide caches (loaded configs, feature flags) are rebuilt wholesale
into a new immutable value and published with a single reference swap,
so readers only ever see a complete snapshot.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

log = logging.getLogger("nbs_sshfs.snapshot")

T = TypeVar("T")

Listener = Callable[[T], None]


class SnapshotCell(Generic[T]):
    """
    Holds the current snapshot and notifies listeners after each swap.

    A failing listener is logged and does not prevent the remaining
    listeners from running.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._listeners: list[Listener[T]] = []
        self._lock = threading.Lock()

    def get(self) -> T:
        """Return the current snapshot."""
        return self._value

    def swap(self, value: T) -> T:
        """
        Publish a new snapshot and notify listeners.

        Returns:
            The previous snapshot
        """
        with self._lock:
            previous, self._value = self._value, value
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                log.exception("Snapshot listener %r failed", listener)
        return previous

    def subscribe(self, listener: Listener[T], call_now: bool = False) -> Callable[[], None]:
        """
        Register a listener.

        Args:
            listener: Called with the new snapshot after every swap
            call_now: Also call the listener immediately with the current value

        Returns:
            A callable that unsubscribes the listener
        """
        with self._lock:
            self._listeners.append(listener)
        if call_now:
            listener(self._value)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
