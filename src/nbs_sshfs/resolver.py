"""
Layered config loading, merging and extend resolution.

Records come from three layers in increasing precedence (global,
workspace, folder). Each layer holds inline records plus records read
from JSON files and config folders attached to it. Files may carry
comments and trailing commas (JSONC). Loading produces an immutable
ConfigSnapshot which is swapped in atomically.

Duplicate names: the most specific record wins. When it sets
merge=True, the less specific same-named record fills its unset fields.

extend: a record pulls in the fields of the named records, earlier
names overridden by later ones, the record itself overriding all.
Cyclic or missing references are reported and skipped, the rest of the
record still resolves.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Union

import json5

from nbs_sshfs.errors import ConfigValueError, ErrorContext, ResolutionError, SSHFSError
from nbs_sshfs.records import (
    ConfigLayer,
    ConfigRecord,
    censor_config,
    fill_gaps,
    merge_records,
    parse_connection_string,
)
from nbs_sshfs.snapshot import SnapshotCell
from nbs_sshfs.validation import invalid_config_name

log = logging.getLogger("nbs_sshfs.resolver")

RecordInput = Union[ConfigRecord, Mapping[str, Any]]

# Looked up in every attached config folder, in this order
CONFIG_FILE_NAMES = ("sshfs.json", "sshfs.jsonc")


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    All loaded records, deduplicated, merged and with extends applied.

    errors holds everything reported while building the snapshot.
    """
    records: tuple[ConfigRecord, ...] = ()
    errors: tuple[SSHFSError, ...] = ()
    _by_name: Mapping[str, ConfigRecord] = field(
        default_factory=lambda: MappingProxyType({}), repr=False, compare=False
    )

    @classmethod
    def build(cls, records: Iterable[ConfigRecord], errors: Iterable[SSHFSError]) -> ConfigSnapshot:
        records = tuple(records)
        by_name = MappingProxyType({r.name.lower(): r for r in records})
        return cls(records=records, errors=tuple(errors), _by_name=by_name)

    def get(self, name: str) -> ConfigRecord | None:
        """Look up a record by name, case-insensitively."""
        return self._by_name.get(name.lower())

    def names(self) -> list[str]:
        return [r.name for r in self.records]


def resolve_extends(
    name: str,
    by_name: Mapping[str, ConfigRecord],
    errors: list[ResolutionError],
    chain: list[str] | None = None,
) -> ConfigRecord:
    """
    Apply the extend chain of a record.

    Args:
        name: Lower-cased record name, must exist in by_name
        by_name: Lower-cased name to record
        errors: Receives a ResolutionError for each skipped reference
        chain: Names currently being resolved, for cycle detection

    Returns:
        A new record with every resolvable parent merged in
    """
    record = by_name[name]
    if not record.extend:
        return record.clone()
    chain = [*(chain or []), name]
    accumulated: ConfigRecord | None = None
    for parent_name in record.extend:
        key = parent_name.lower()
        if key in chain:
            cycle = [*chain, key]
            errors.append(ResolutionError(
                f"Cyclic dependency in extend of '{name}': {' -> '.join(cycle)}",
                chain=cycle,
                context=ErrorContext(config_name=name),
            ))
            continue
        if key not in by_name:
            errors.append(ResolutionError(
                f"Config '{name}' extends '{parent_name}', which does not exist",
                chain=[*chain, key],
                context=ErrorContext(config_name=name),
            ))
            continue
        parent = resolve_extends(key, by_name, errors, chain)
        accumulated = parent if accumulated is None else merge_records(accumulated, parent)
    if accumulated is None:
        return record.clone()
    return merge_records(accumulated, record)


class ConfigResolver:
    """
    Loads records from the config layers and serves the current snapshot.

    Usage:
        resolver = ConfigResolver()
        resolver.set_layer(ConfigLayer.GLOBAL, [{"name": "web", "host": "web.example.com"}])
        resolver.add_config_file("~/sshfs.json", ConfigLayer.WORKSPACE)
        resolver.reload()
        record = resolver.get_config("web")
    """

    def __init__(self) -> None:
        self._inline: dict[ConfigLayer, list[RecordInput]] = {layer: [] for layer in ConfigLayer}
        self._files: dict[ConfigLayer, list[Path]] = {layer: [] for layer in ConfigLayer}
        self._folders: dict[ConfigLayer, list[Path]] = {layer: [] for layer in ConfigLayer}
        self._cell: SnapshotCell[ConfigSnapshot] = SnapshotCell(ConfigSnapshot())

    # -- layer management ---------------------------------------------------

    def set_layer(self, layer: ConfigLayer, records: Iterable[RecordInput]) -> None:
        """Replace the inline records of a layer. Takes effect on reload()."""
        self._inline[layer] = list(records)

    def add_config_file(self, path: str | Path, layer: ConfigLayer = ConfigLayer.GLOBAL) -> None:
        """Attach a JSON config file to a layer. Takes effect on reload()."""
        self._files[layer].append(Path(path).expanduser())

    def add_config_folder(self, path: str | Path, layer: ConfigLayer = ConfigLayer.WORKSPACE) -> None:
        """
        Attach a folder whose sshfs.json and sshfs.jsonc are read on reload().

        Either file may be absent.
        """
        self._folders[layer].append(Path(path).expanduser())

    # -- loading ------------------------------------------------------------

    def _read_config_file(self, path: Path, errors: list[SSHFSError]) -> list[ConfigRecord]:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            message = f"Error while reading config file {path}: {e}"
            log.error(message)
            errors.append(ConfigValueError(message, ErrorContext(original_error=str(e))))
            return []
        try:
            parsed = json5.loads(content)
            if not isinstance(parsed, list):
                raise ValueError("expected a JSON array of config objects")
            records = [ConfigRecord.from_dict(item, location=str(path)) for item in parsed]
        except ValueError as e:
            message = f"Couldn't parse {path} as a JSON config file: {e}"
            log.error(message)
            errors.append(ConfigValueError(message, ErrorContext(original_error=str(e))))
            return []
        log.debug("Read %d configs from %s", len(records), path)
        return records

    def _load_layer(self, layer: ConfigLayer, errors: list[SSHFSError]) -> list[ConfigRecord]:
        records: list[ConfigRecord] = []
        for item in self._inline[layer]:
            if isinstance(item, ConfigRecord):
                record = item.clone()
                record.location = layer
                record.locations = [layer]
            else:
                try:
                    record = ConfigRecord.from_dict(item, location=layer)
                except ConfigValueError as e:
                    log.error("Skipped an invalid config in %s: %s", layer.name, e)
                    errors.append(e)
                    continue
            records.append(record)
        for path in self._files[layer]:
            records.extend(self._read_config_file(path, errors))
        for folder in self._folders[layer]:
            for name in CONFIG_FILE_NAMES:
                path = folder / name
                if path.is_file():
                    records.extend(self._read_config_file(path, errors))
        return records

    def load_raw(self, errors: list[SSHFSError] | None = None) -> list[ConfigRecord]:
        """
        Load every layer, most specific first, dropping nameless/invalid records.

        Names are lower-cased.
        """
        if errors is None:
            errors = []
        all_records: list[ConfigRecord] = []
        for layer in sorted(ConfigLayer, reverse=True):
            all_records.extend(self._load_layer(layer, errors))

        valid: list[ConfigRecord] = []
        for record in all_records:
            record.name = (record.name or "").lower()
            if not record.name:
                message = "Skipped an invalid config (missing a name field)"
                log.error("%s:\n%s", message, json.dumps(censor_config(record), indent=4))
                errors.append(ConfigValueError(message))
                continue
            problem = invalid_config_name(record.name)
            if problem:
                message = f"Skipped config with the invalid name {record.name!r}: {problem}"
                log.warning(message)
                errors.append(ConfigValueError(message, ErrorContext(config_name=record.name)))
                continue
            valid.append(record)
        return valid

    def reload(self) -> ConfigSnapshot:
        """Rebuild the snapshot from all layers and swap it in."""
        log.info("Loading configurations...")
        errors: list[SSHFSError] = []
        merged: list[ConfigRecord] = []
        by_name: dict[str, ConfigRecord] = {}
        for record in self.load_raw(errors):
            dup = by_name.get(record.name)
            if dup is None:
                log.debug("Added configuration %s from %s", record.name, record.locations)
                by_name[record.name] = record
                merged.append(record)
            elif dup.merge:
                log.debug("Merging duplicate %s from %s", record.name, record.locations)
                fill_gaps(dup, record)
                dup.locations = [*dup.locations, *record.locations]
            else:
                log.debug("Ignoring duplicate %s from %s", record.name, record.locations)

        resolution_errors: list[ResolutionError] = []
        resolved = [resolve_extends(r.name, by_name, resolution_errors) for r in merged]
        for error in resolution_errors:
            log.warning(str(error))
        errors.extend(resolution_errors)

        snapshot = ConfigSnapshot.build(resolved, errors)
        log.info("Found %d configurations", len(snapshot.records))
        self._cell.swap(snapshot)
        return snapshot

    # -- access -------------------------------------------------------------

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._cell.get()

    @property
    def configs(self) -> list[ConfigRecord]:
        return list(self.snapshot.records)

    def subscribe(self, listener: Callable[[ConfigSnapshot], None]) -> Callable[[], None]:
        """Call listener after every reload."""
        return self._cell.subscribe(listener)

    def get_config(self, value: str) -> ConfigRecord | None:
        """
        Find a config by name or connection string.

        A loaded record with the given name (case-insensitive) wins.
        Otherwise input containing '@' is parsed as a connection string.

        Returns:
            The record, or None when nothing usable matches
        """
        loaded = self.snapshot.get(value)
        if loaded is not None:
            return loaded
        if "@" not in value:
            return None
        parsed = parse_connection_string(value)
        if isinstance(parsed, str):
            return None
        return parsed[0]
