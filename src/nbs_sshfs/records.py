"""
Declarative host records and the helpers that operate on them.

Provides:
- ConfigRecord: one named host descriptor as loaded from a config layer
- ProxyConfig: SOCKS4/SOCKS5/HTTP proxy or shell proxy command
- parse_connection_string: ad hoc "user@host:port/path" targets
- Environment helpers: merge_environment, escape_bash_value, ...
- Location/group helpers used by UI collaborators
- censor_config: secret-free view of a record for logs and events

JSON config objects use camelCase keys (privateKeyPath, sftpSudo, ...),
which map onto the snake_case dataclass fields.
"""
from __future__ import annotations

import copy
import logging
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from typing import Any, Union

from nbs_sshfs.errors import ConfigValueError

log = logging.getLogger("nbs_sshfs.records")

CENSORED = "<censored>"
DEFAULT_NEW_FILE_MODE = 0o664


class ConfigLayer(IntEnum):
    """Built-in config layers, in increasing precedence."""
    GLOBAL = 1
    WORKSPACE = 2
    FOLDER = 3


# A built-in layer, or the path of the JSON file a record was read from
ConfigLocation = Union[ConfigLayer, str]


class ProxyType(str, Enum):
    """Supported proxy kinds."""
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"
    HTTP = "http"
    COMMAND = "command"


class ResolutionState(Enum):
    """Calculation state of a record."""
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


@dataclass
class ProxyConfig:
    """
    Proxy policy for a record.

    Network proxies need host and port, a command proxy needs command.
    """
    type: ProxyType
    host: str | None = None
    port: int | None = None
    command: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProxyConfig:
        if not isinstance(data, Mapping):
            raise ConfigValueError(f"Expected an object for 'proxy', got {data!r}")
        try:
            proxy_type = ProxyType(str(data.get("type", "")).lower())
        except ValueError:
            raise ConfigValueError(f"Unknown proxy type: {data.get('type')!r}") from None
        port = data.get("port")
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        return cls(
            type=proxy_type,
            host=data.get("host"),
            port=port,
            command=data.get("command"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type.value}
        for key in ("host", "port", "command"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    def describe(self) -> str:
        """Human-readable identity, used to name the failing link."""
        if self.type is ProxyType.COMMAND:
            return f"proxy command {self.command!r}"
        return f"{self.type.value} proxy {self.host}:{self.port}"


@dataclass(frozen=True)
class EnvironmentVariable:
    key: str
    value: str


@dataclass
class ConfigRecord:
    """
    A named, declarative host descriptor.

    Fields left as None are "not set" and can be filled by merging,
    extending, session-store lookup or ssh_config overlays. Fields that
    accept True (username, password, passphrase) ask for the value to be
    prompted for at connection time.
    """
    name: str
    label: str | None = None
    group: str | None = None
    merge: bool | None = None
    extend: list[str] | None = None
    root: str | None = None
    putty: str | bool | None = None

    # Connection
    host: str | bool | None = None
    port: int | str | None = None
    username: str | bool | None = None
    password: str | bool | None = None
    agent: str | None = None
    private_key_path: str | None = None
    private_key: bytes | None = None
    passphrase: str | bool | None = None
    proxy: ProxyConfig | None = None
    hop: str | None = None

    # SFTP and shell
    sftp_command: str | None = None
    sftp_sudo: str | bool | None = None
    terminal_command: str | list[str] | None = None
    task_command: str | list[str] | None = None
    environment: list[EnvironmentVariable] | None = None
    new_file_mode: int | str | None = None

    # Behaviour
    instant_connection: bool | None = None
    flags: list[str] | None = None
    compress: bool | None = None
    agent_forward: bool | None = None
    try_keyboard: bool | None = None
    ready_timeout: float | None = None
    debug: bool | None = None
    password_auth: bool | None = None

    # Provenance and resolution bookkeeping
    location: ConfigLocation | None = None
    locations: list[ConfigLocation] = field(default_factory=list)
    state: ResolutionState = field(default=ResolutionState.UNRESOLVED, compare=False)
    calculated: ConfigRecord | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        location: ConfigLocation | None = None,
    ) -> ConfigRecord:
        """
        Build a record from a JSON config object.

        Unknown keys are ignored. A missing name yields an empty name so
        the loader can report it.
        """
        if not isinstance(data, Mapping):
            raise ConfigValueError(f"Expected a config object, got {type(data).__name__}")

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _camel_to_snake(key)
            if name not in _DATA_FIELDS:
                log.debug("Ignoring unknown config key %r", key)
                continue
            kwargs[name] = value

        name = kwargs.pop("name", None) or ""
        if not isinstance(name, str):
            raise ConfigValueError(f"Config name must be a string, got {name!r}")

        extend = kwargs.get("extend")
        if isinstance(extend, str):
            kwargs["extend"] = [extend]
        elif extend is not None:
            kwargs["extend"] = [str(e) for e in extend]

        if kwargs.get("proxy") is not None:
            kwargs["proxy"] = ProxyConfig.from_dict(kwargs["proxy"])
        if kwargs.get("environment") is not None:
            kwargs["environment"] = merge_environment(kwargs["environment"])
        if kwargs.get("flags") is not None:
            flags = kwargs["flags"]
            if not isinstance(flags, list):
                raise ConfigValueError(f"Expected string array for flags, but got: {flags!r}")
            kwargs["flags"] = [str(f) for f in flags]

        record = cls(name=name, **kwargs)
        if location is not None:
            record.location = location
            record.locations = [location]
        return record

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """
        Convert to a camelCase JSON object, excluding unset fields.

        Internal provenance fields are prefixed with an underscore and only
        included on request.
        """
        result: dict[str, Any] = {"name": self.name}
        for name in _DATA_FIELDS:
            if name == "name":
                continue
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, ProxyConfig):
                value = value.to_dict()
            elif name == "environment":
                value = [{"key": v.key, "value": v.value} for v in value]
            elif isinstance(value, list):
                value = list(value)
            result[_snake_to_camel(name)] = value
        if include_internal:
            if self.location is not None:
                result["_location"] = _location_to_json(self.location)
            result["_locations"] = [_location_to_json(loc) for loc in self.locations]
        return result

    def clone(self) -> ConfigRecord:
        """Copy the record, giving the copy its own lists."""
        twin = replace(self)
        for name in ("extend", "environment", "flags", "terminal_command", "task_command"):
            value = getattr(twin, name)
            if isinstance(value, list):
                setattr(twin, name, list(value))
        twin.locations = list(self.locations)
        if self.proxy is not None:
            twin.proxy = copy.copy(self.proxy)
        return twin

    @property
    def is_resolved(self) -> bool:
        return self.state is ResolutionState.RESOLVED


# Fields carrying user data, as opposed to provenance/bookkeeping
_INTERNAL_FIELDS = frozenset({"location", "locations", "state", "calculated"})
_DATA_FIELDS: tuple[str, ...] = tuple(
    f.name for f in fields(ConfigRecord) if f.name not in _INTERNAL_FIELDS
)
# Fields that merging and extending copy between records
MERGEABLE_FIELDS: tuple[str, ...] = tuple(f for f in _DATA_FIELDS if f not in ("name", "merge"))


def _camel_to_snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _location_to_json(location: ConfigLocation) -> int | str:
    if isinstance(location, ConfigLayer):
        return int(location)
    return location


def fill_gaps(target: ConfigRecord, source: ConfigRecord) -> None:
    """Copy every field set on source but unset on target, in place."""
    for name in MERGEABLE_FIELDS:
        if getattr(target, name) is None:
            value = getattr(source, name)
            if value is not None:
                setattr(target, name, copy.copy(value))


def merge_records(base: ConfigRecord, override: ConfigRecord) -> ConfigRecord:
    """
    Shallow-merge override over base into a new record.

    Every field set on override wins. The result takes its identity and
    provenance from override.
    """
    result = override.clone()
    fill_gaps(result, base)
    return result


# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------

CONNECTION_REGEX = re.compile(
    r"^((?P<user>[\w\-._]+)?(;[\w-]+=[\w\d-]+(,[\w\d-]+=[\w\d-]+)*)?@)?"
    r"(?P<host>[^\s@\\/:,=]+)(:(?P<port>\d+))?(?P<path>/\S*)?$"
)

USERNAME_PLACEHOLDER = "$USERNAME"


def parse_connection_string(value: str) -> tuple[ConfigRecord, str | None] | str:
    """
    Parse an ad hoc connection string.

    Supported forms include:
    - user;abc=def,a-b=1-5@server.example.com:22/some/file.ext
    - user@server.example.com/directory
    - server:22/directory
    - @server/path

    Returns:
        (record, path) on success, or a message describing why the input
        is malformed. Nothing is raised for bad input.
    """
    value = value.strip()
    match = CONNECTION_REGEX.match(value)
    if not match:
        return 'Invalid format, expected something like "user@example.com:22/some/path"'
    user = match.group("user")
    host = match.group("host")
    path = match.group("path")
    port_str = match.group("port")
    port = int(port_str) if port_str else None
    if port_str and (not port or port < 1 or port > 65535):
        return f"The string '{port_str}' is not a valid port number"
    name = f"{user or ''}@{host}{f':{port}' if port else ''}{path or ''}"
    record = ConfigRecord(
        name=name,
        host=host,
        port=port,
        username=user or USERNAME_PLACEHOLDER,
        instant_connection=True,
    )
    return record, path


# ---------------------------------------------------------------------------
# Variables and environment
# ---------------------------------------------------------------------------

_VARIABLE_REGEX = re.compile(r"\$\w+")


def replace_variables(value: Any, env: Mapping[str, str] | None = None) -> Any:
    """
    Replace $NAME tokens with values from the environment.

    Unknown variables become empty strings. Non-string values are
    returned unchanged.
    """
    if not isinstance(value, str):
        return value
    source = os.environ if env is None else env
    return _VARIABLE_REGEX.sub(lambda m: source.get(m.group(0)[1:], ""), value)


EnvironmentInput = Union[
    Iterable[Union[EnvironmentVariable, Mapping[str, str]]],
    Mapping[str, str],
    None,
]


def merge_environment(*environments: EnvironmentInput) -> list[EnvironmentVariable]:
    """
    Merge environment definitions, later definitions overwriting earlier ones.

    Each argument is either a list of variables ({"key", "value"} objects
    or EnvironmentVariable) or a plain key to value mapping. A key keeps
    the position where it first appeared.
    """
    result: dict[str, EnvironmentVariable] = {}
    for environment in environments:
        if not environment:
            continue
        if isinstance(environment, Mapping):
            for key, value in environment.items():
                result[key] = EnvironmentVariable(str(key), str(value))
            continue
        for variable in environment:
            if isinstance(variable, EnvironmentVariable):
                result[variable.key] = variable
            elif isinstance(variable, Mapping) and "key" in variable:
                key = str(variable["key"])
                result[key] = EnvironmentVariable(key, str(variable.get("value", "")))
            else:
                raise ConfigValueError(f"Invalid environment variable entry: {variable!r}")
    return list(result.values())


_CLEAN_BASH_VALUE = re.compile(r"^[\w\-/\\]+$")


def escape_bash_value(value: str) -> str:
    """Single-quote a value for bash unless it is obviously safe."""
    if _CLEAN_BASH_VALUE.match(value):
        return value
    return "'" + value.replace("'", "'\\''") + "'"


def environment_to_export_string(
    env: Iterable[EnvironmentVariable],
    create_set_env: Callable[[str, str], str] = lambda key, value: f"export {key}={value}",
) -> str:
    """Render variables as e.g. "export A=1; export B='x y'"."""
    return "; ".join(
        create_set_env(escape_bash_value(v.key), escape_bash_value(v.value)) for v in env
    )


def join_commands(commands: str | list[str] | None, separator: str) -> str | None:
    """Join commands, skipping empty ones. A single string is returned as-is."""
    if commands is None or isinstance(commands, str):
        return commands
    return separator.join(c for c in commands if c and c.strip())


_SYMBOLIC_MODE = re.compile(r"^[r-][w-][x-][r-][w-][x-][r-][w-][x-]$")


def parse_new_file_mode(mode: int | str | None) -> int:
    """
    Convert a configured new-file mode to permission bits.

    Accepts an int, an octal string ("664", "0o664") or a symbolic
    string ("rw-rw-r--"). None gives the default 0o664.
    """
    if mode is None:
        return DEFAULT_NEW_FILE_MODE
    if isinstance(mode, bool):
        raise ConfigValueError(f"Invalid umask '{mode}'")
    if isinstance(mode, int):
        return mode
    text = str(mode).strip()
    if _SYMBOLIC_MODE.match(text):
        bits = 0
        for char in text:
            bits = (bits << 1) | (char != "-")
        return bits
    if text.lower().startswith("0o"):
        text = text[2:]
    try:
        return int(text, 8)
    except ValueError:
        raise ConfigValueError(f"Invalid umask '{mode}'") from None


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

def censor_config(record: ConfigRecord) -> dict[str, Any]:
    """
    Return a JSON-safe view of a record with secrets removed.

    String passwords and passphrases are replaced, while True (meaning
    "prompt for it") is kept so the intent stays visible.
    """
    result = record.to_dict(include_internal=True)
    for key in ("password", "passphrase"):
        if isinstance(result.get(key), str):
            result[key] = CENSORED
    if "privateKey" in result:
        result["privateKey"] = CENSORED
    return result


# ---------------------------------------------------------------------------
# Locations and groups
# ---------------------------------------------------------------------------

def format_config_location(location: ConfigLocation | None) -> str:
    if location is None or location == "":
        return "Unknown location"
    if isinstance(location, ConfigLayer):
        return f"{location.name.title()} settings"
    return location


def get_locations(records: Iterable[ConfigRecord]) -> list[ConfigLocation]:
    """All locations records can be saved to, built-in layers first."""
    result: list[ConfigLocation] = [ConfigLayer.GLOBAL, ConfigLayer.WORKSPACE]
    for record in records:
        if record.location is not None and record.location not in result:
            result.append(record.location)
    return result


def get_groups(records: Iterable[ConfigRecord], expanded: bool = False) -> list[str]:
    """
    List the distinct groups in use.

    With expanded set, "a.b.c" also contributes its parents "a" and "a.b".
    """
    result: list[str] = []
    for record in records:
        if not record.group:
            continue
        parts = record.group.split(".") if expanded else [record.group]
        for index in range(len(parts)):
            group = ".".join(parts[: index + 1])
            if group not in result:
                result.append(group)
    return result


def group_by_location(
    records: Iterable[ConfigRecord],
) -> list[tuple[ConfigLocation, list[ConfigRecord]]]:
    grouped: dict[ConfigLocation, list[ConfigRecord]] = {}
    for record in records:
        location = record.location if record.location is not None else "Unknown"
        grouped.setdefault(location, []).append(record)
    return list(grouped.items())


def group_by_group(records: Iterable[ConfigRecord]) -> list[tuple[str, list[ConfigRecord]]]:
    grouped: dict[str, list[ConfigRecord]] = {}
    for record in records:
        grouped.setdefault(record.group or "", []).append(record)
    return list(grouped.items())
