"""
Feature flags.

Flags are short tokens that switch fixes and debug features on or off:
- NAME        present without a value (get_flag returns (None, origin))
- +NAME       True
- -NAME       False
- NAME=value  a string value

Names are case-insensitive. Within one list the first mention of a name
wins; across layers the more specific layer wins, and per-record flags
override everything.

Known flags:
- DF-GE: drop the diffie-hellman-group-exchange key exchange algorithms
- DEBUG_SSH2: debug logging of the SSH transport for every connection
- OPENSSH-CONFIG: apply the ssh_config overlay (on by default for
  instant connections only)
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Union

from nbs_sshfs.snapshot import SnapshotCell

log = logging.getLogger("nbs_sshfs.flags")

FlagValue = Union[str, bool, None]
FlagCombo = tuple[FlagValue, str]

BUILTIN_DEFAULT_FLAGS: list[str] = []

OVERRIDE_ORIGIN = "Override"
MISSING_ORIGIN = "missing"

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n"})


def parse_flag_list(flags: Sequence[str] | None, origin: str) -> dict[str, FlagCombo]:
    """
    Parse a list of flag tokens.

    Raises:
        ValueError: If flags is not a list of strings
    """
    if flags is None:
        return {}
    if isinstance(flags, str) or not isinstance(flags, Sequence):
        raise ValueError(f"Expected string array for flags, but got: {flags!r}")
    scope: dict[str, FlagCombo] = {}
    for flag in flags:
        name = flag
        value: FlagValue = None
        if "=" in flag:
            name, value = flag.split("=", 1)
        elif flag.startswith("+"):
            name, value = flag[1:], True
        elif flag.startswith("-"):
            name, value = flag[1:], False
        name = name.lower()
        if name in scope:
            continue
        scope[name] = (value, origin)
    return scope


def flag_to_boolean(name: str, combo: FlagCombo | None, missing: bool) -> tuple[bool, str]:
    """
    Convert a flag value to a boolean.

    Returns:
        (value, origin), or (missing, "missing") for an absent flag

    Raises:
        ValueError: If a string value is not a recognised boolean
    """
    if combo is None:
        return missing, MISSING_ORIGIN
    value, origin = combo
    if value is None:
        return True, origin
    if isinstance(value, bool):
        return value, origin
    lower = value.lower()
    if lower in _TRUE_STRINGS:
        return True, origin
    if lower in _FALSE_STRINGS:
        return False, origin
    raise ValueError(f"Could not convert '{value}' for flag '{name}' to a boolean!")


@dataclass(frozen=True)
class FlagSnapshot:
    """Immutable view of the combined flag layers."""
    flags: Mapping[str, FlagCombo] = field(default_factory=lambda: MappingProxyType({}))

    def resolve(self, overrides: Sequence[str] | None = None) -> dict[str, FlagCombo]:
        """Combine the snapshot with per-record overrides."""
        return {**self.flags, **parse_flag_list(overrides, OVERRIDE_ORIGIN)}

    def get_flag(self, name: str, overrides: Sequence[str] | None = None) -> FlagCombo | None:
        return self.resolve(overrides).get(name.lower())

    def get_flag_boolean(
        self,
        name: str,
        missing: bool,
        overrides: Sequence[str] | None = None,
    ) -> tuple[bool, str]:
        return flag_to_boolean(name, self.get_flag(name, overrides), missing)


class FlagStore:
    """
    Layered flag configuration behind an atomically swapped snapshot.

    Layers in increasing precedence: built-in defaults, default settings,
    global, workspace, workspace folder.

    Usage:
        store = FlagStore(global_flags=["+DF-GE"])
        store.get_flag_boolean("df-ge", False)  # (True, "Global Settings")
    """

    def __init__(
        self,
        default_flags: Sequence[str] | None = None,
        global_flags: Sequence[str] | None = None,
        workspace_flags: Sequence[str] | None = None,
        folder_flags: Sequence[str] | None = None,
    ) -> None:
        self._layers: dict[str, Sequence[str] | None] = {
            "Default Settings": default_flags,
            "Global Settings": global_flags,
            "Workspace Settings": workspace_flags,
            "WorkspaceFolder Settings": folder_flags,
        }
        self._cell: SnapshotCell[FlagSnapshot] = SnapshotCell(self._calculate())

    def _calculate(self) -> FlagSnapshot:
        flags: dict[str, FlagCombo] = {}
        flags.update(parse_flag_list(BUILTIN_DEFAULT_FLAGS, "Built-in Default"))
        for origin, layer in self._layers.items():
            flags.update(parse_flag_list(layer, origin))
        log.info("Calculated config flags: %s", flags)
        return FlagSnapshot(MappingProxyType(flags))

    def update(
        self,
        *,
        default_flags: Sequence[str] | None = None,
        global_flags: Sequence[str] | None = None,
        workspace_flags: Sequence[str] | None = None,
        folder_flags: Sequence[str] | None = None,
    ) -> FlagSnapshot:
        """
        Replace the given layers and publish a recalculated snapshot.

        Layers passed as None keep their current value; pass an empty
        list to clear one.
        """
        changes = {
            "Default Settings": default_flags,
            "Global Settings": global_flags,
            "Workspace Settings": workspace_flags,
            "WorkspaceFolder Settings": folder_flags,
        }
        for origin, layer in changes.items():
            if layer is not None:
                self._layers[origin] = layer
        snapshot = self._calculate()
        self._cell.swap(snapshot)
        return snapshot

    @property
    def snapshot(self) -> FlagSnapshot:
        return self._cell.get()

    def subscribe(self, listener: Callable[[FlagSnapshot], None]) -> Callable[[], None]:
        """Call listener now and after every recalculation."""
        return self._cell.subscribe(listener, call_now=True)

    def get_flag(self, name: str, overrides: Sequence[str] | None = None) -> FlagCombo | None:
        """
        Look up a flag.

        Returns:
            (value, origin), or None when the flag is absent
        """
        return self.snapshot.get_flag(name, overrides)

    def get_flag_boolean(
        self,
        name: str,
        missing: bool,
        overrides: Sequence[str] | None = None,
    ) -> tuple[bool, str]:
        """Look up a flag as a boolean, see flag_to_boolean."""
        return self.snapshot.get_flag_boolean(name, missing, overrides)
