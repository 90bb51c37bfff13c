"""
ssh_config parsing and matching.

Provides:
- parse_contents: turn ssh_config text into Global/Host/Match blocks
- SSHConfigHolder: ordered blocks plus the diagnostics collected on the way
- build_holder: parse a list of files into a single holder
- fill_config_record: overlay the computed ssh_config onto a ConfigRecord

Only a practical subset of OpenSSH is honoured. Unknown directives are
kept as-is so that forward-compatible files still parse.

Blocks are folded in file order: a Hostname or User directive picked up
from an earlier block changes what later Host/Match blocks are tested
against.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import asdict, dataclass, replace
from enum import Enum, IntEnum
from pathlib import Path
from typing import NamedTuple

from nbs_sshfs.patterns import match_host_patterns, match_list
from nbs_sshfs.platform import expand_path, get_local_user
from nbs_sshfs.records import USERNAME_PLACEHOLDER, ConfigRecord, ProxyConfig, ProxyType

log = logging.getLogger("nbs_sshfs.ssh_config")

PAIR_REGEX = re.compile(r"^(\w+)\s*(?:=|\s)\s*(.+)$")
QUOTE_REGEX = re.compile(r'^"(.*)"$')

ERR_NO_MATCH = "Incorrect comment or key-value pair syntax"
ERR_UNSUPPORTED_FINAL = "Unsupported Match keyword 'final'"
ERR_UNSUPPORTED_CANONICAL = "Unsupported Match keyword 'canonical'"
ERR_MULTIPLE_IDENTITY_FILE = "Multiple IdentityFiles given, only the first one is tried"


class Severity(IntEnum):
    INFO = 1
    WARN = 2
    ERROR = 3

    @property
    def label(self) -> str:
        return {Severity.INFO: "info", Severity.WARN: "warning", Severity.ERROR: "error"}[self]


class LineError(NamedTuple):
    """A parse or match diagnostic. Never raised, only collected."""
    source: str
    line: int
    message: str
    severity: Severity


def format_line_error(error: LineError) -> str:
    return f"[{error.severity.label.upper()}] ({error.source}:{error.line}) {error.message}"


class BlockType(Enum):
    GLOBAL = "GLOBAL"
    HOST = "HOST"
    MATCH = "MATCH"
    COMPUTED = "COMPUTED"


@dataclass
class MatchContext:
    """
    What Host and Match blocks are evaluated against.

    hostname and user change while blocks are folded, the other fields
    stay as given.
    """
    hostname: str
    original_hostname: str
    user: str
    local_user: str | None = None
    is_final_or_canonical: bool = False


def _unquote(value: str) -> str:
    return QUOTE_REGEX.sub(r"\1", value)


class ConfigBlock:
    """
    One Host/Match block (or the implicit global block) of an ssh_config.

    Keys are lower-cased. A directive may repeat: get() returns the first
    value, get_all() every value in order.
    """

    def __init__(self, type: BlockType, source: str, line: int) -> None:
        self.type = type
        self.source = source
        self.line = line
        self._entries: dict[str, list[str]] = {}

    def get(self, key: str) -> str:
        values = self._entries.get(key.lower())
        return values[0] if values else ""

    def get_all(self, key: str) -> list[str]:
        return list(self._entries.get(key.lower(), []))

    def set(self, key: str, value: str | list[str]) -> None:
        if isinstance(value, str):
            value = [value]
        self._entries[key.lower()] = list(value)

    def add(self, key: str, value: str | list[str]) -> None:
        if isinstance(value, str):
            value = [value]
        self._entries.setdefault(key.lower(), []).extend(value)

    def __iter__(self) -> Iterator[tuple[str, list[str]]]:
        return iter([(key, list(values)) for key, values in self._entries.items()])

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._entries

    def merge(self, other: ConfigBlock) -> None:
        """Append every directive of other after the ones already present."""
        for key, values in other:
            self.add(key, values)

    def _error(self, message: str) -> LineError:
        return LineError(self.source, self.line, message, Severity.ERROR)

    def _check_host(self, hostname: str) -> bool:
        patterns = [_unquote(p) for p in re.split(r"[\s,]+", self.get("host")) if p]
        return match_host_patterns(hostname, patterns)

    def _check_match(self, context: MatchContext) -> tuple[bool, list[LineError]]:
        tokens = self.get("match").split()
        index = 0
        while index < len(tokens):
            current = tokens[index]
            lower = current.lower()
            if lower == "all":
                if len(tokens) == 1:
                    return True, []
                if len(tokens) == 2 and index == 1 and tokens[0].lower() in ("final", "canonical"):
                    return context.is_final_or_canonical, []
                return False, [self._error("'all' cannot be combined with other Match attributes")]
            if lower in ("final", "canonical"):
                if not context.is_final_or_canonical:
                    return False, []
                index += 1
                continue
            index += 1
            if index >= len(tokens):
                return False, [self._error(f"Match keyword '{lower}' requires argument")]
            argument = _unquote(tokens[index])
            index += 1
            if lower == "exec":
                return False, [self._error("'exec' is not supported for now")]
            elif lower == "host":
                subject = context.hostname
            elif lower == "originalhost":
                subject = context.original_hostname
            elif lower == "user":
                subject = context.user
            elif lower == "localuser" and context.local_user:
                subject = context.local_user
            else:
                return False, [self._error(f"Unknown argument '{current}' for Match keyword")]
            if not match_list(subject, argument):
                return False, []
        return True, []

    def matches(self, context: MatchContext) -> tuple[bool, list[LineError]]:
        """
        Check whether this block applies to the context.

        Returns:
            (matched, diagnostics); a block that reports a diagnostic
            never matches
        """
        if self.type is BlockType.GLOBAL:
            return True, []
        if self.type is BlockType.HOST:
            return self._check_host(context.hostname), []
        if self.type is BlockType.MATCH:
            return self._check_match(context)
        return False, [LineError(self.source, 0, "Cannot match a computed config", Severity.ERROR)]

    def __repr__(self) -> str:
        if self.type is BlockType.HOST:
            return f'ConfigBlock(HOST,{self.source}:{self.line},"{self.get("host")}")'
        if self.type is BlockType.MATCH:
            return f'ConfigBlock(MATCH,{self.source}:{self.line},"{self.get("match")}")'
        return f"ConfigBlock({self.type.value},{self.source}:{self.line})"


class SSHConfigHolder:
    """
    Ordered list of blocks from one or more ssh_config files.

    Usage:
        holder = parse_contents(text, "~/.ssh/config")
        computed = holder.build_config(MatchContext("alias", "alias", "me"))
        computed.get("hostname")
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.errors: list[LineError] = []
        self.blocks: list[ConfigBlock] = []

    def report_error(self, line: int, message: str, severity: Severity = Severity.ERROR) -> None:
        self.errors.append(LineError(self.source, line, message, severity))

    def add(self, block: ConfigBlock) -> None:
        self.blocks.append(block)

    def merge(self, other: SSHConfigHolder) -> None:
        self.blocks.extend(other.blocks)
        self.errors.extend(other.errors)

    def highest_severity(self) -> Severity | None:
        if not self.errors:
            return None
        return max(error.severity for error in self.errors)

    def log_diagnostics(self) -> None:
        """Log all diagnostics in one batch at the worst severity present."""
        severity = self.highest_severity()
        if severity is None:
            return
        level = {
            Severity.INFO: logging.INFO,
            Severity.WARN: logging.WARNING,
            Severity.ERROR: logging.ERROR,
        }[severity]
        lines = [f"Building ssh_config holder produced {severity.label} messages:"]
        lines.extend(f"- {format_line_error(error)}" for error in self.errors)
        log.log(level, "\n".join(lines))

    def build_config(self, context: MatchContext) -> ConfigBlock:
        """
        Fold every matching block, in order, into one computed block.

        The given context is not modified; a working copy is updated with
        the Hostname/User found so far before each block is tested.
        """
        context = replace(context)
        result = ConfigBlock(BlockType.COMPUTED, self.source, 0)
        for block in self.blocks:
            matched, errors = block.matches(context)
            for error in errors:
                log.warning("ssh_config: %s", format_line_error(error))
            if not matched:
                log.debug("Config %r does not match context %s, ignoring", block, asdict(context))
                continue
            log.debug("Config %r matches context %s, merging", block, asdict(context))
            result.merge(block)
            context.hostname = result.get("hostname") or context.hostname
            context.user = result.get("user") or context.user
        return result


def parse_contents(content: str, source: str) -> SSHConfigHolder:
    """
    Parse ssh_config text.

    Parsing never fails: malformed lines are reported on the holder and
    skipped. An implicit global block at line 0 is always present.
    """
    holder = SSHConfigHolder(source)
    current = ConfigBlock(BlockType.GLOBAL, source, 0)
    holder.add(current)
    for line_no, line in enumerate(content.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = PAIR_REGEX.match(line)
        if not match:
            holder.report_error(line_no, ERR_NO_MATCH)
            continue
        key = match.group(1).lower()
        value = _unquote(match.group(2))

        if key == "host":
            current = ConfigBlock(BlockType.HOST, source, line_no)
            holder.add(current)
        elif key == "match":
            current = ConfigBlock(BlockType.MATCH, source, line_no)
            holder.add(current)
            tokens = [_unquote(t).lower() for t in value.split()]
            if "final" in tokens:
                holder.report_error(line_no, ERR_UNSUPPORTED_FINAL, Severity.WARN)
            if "canonical" in tokens:
                holder.report_error(line_no, ERR_UNSUPPORTED_CANONICAL, Severity.WARN)
        elif key == "identityfile" and current.get("identityfile"):
            holder.report_error(line_no, ERR_MULTIPLE_IDENTITY_FILE, Severity.WARN)

        current.add(key, value.strip())
    return holder


def build_holder(paths: Sequence[str | Path]) -> SSHConfigHolder:
    """
    Parse several ssh_config files into one holder, in the given order.

    A missing file is an INFO diagnostic, an unreadable one an ERROR.
    Diagnostics are logged once, batched, before returning.
    """
    log.info("Building ssh_config holder for %d paths", len(paths))
    holder = SSHConfigHolder("<root>")
    for index, path in enumerate(paths):
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            holder.report_error(index, f"No ssh_config file found at '{path}', skipping", Severity.INFO)
            continue
        except OSError as e:
            holder.report_error(index, f"Error while reading ssh_config file '{path}': {e}")
            continue
        holder.merge(parse_contents(content, str(path)))
    holder.log_diagnostics()
    return holder


# ---------------------------------------------------------------------------
# Overlay onto ConfigRecord
# ---------------------------------------------------------------------------

def expand_tokens(
    value: str,
    host: str,
    port: int = 22,
    user: str | None = None,
    local_user: str | None = None,
    original_host: str | None = None,
) -> str:
    """Expand SSH config tokens in a value.

    Tokens:
    - %h: target hostname
    - %p: port (default 22)
    - %r: remote username
    - %u: local username
    - %n: original hostname
    - %%: literal %
    """
    if local_user is None:
        local_user = get_local_user()
    if user is None:
        user = local_user

    result = value
    result = result.replace("%%", "\x00")  # Temporary placeholder
    result = result.replace("%h", host)
    result = result.replace("%p", str(port))
    result = result.replace("%n", original_host or host)
    result = result.replace("%r", user)
    result = result.replace("%u", local_user)
    result = result.replace("\x00", "%")
    return result


def _to_boolean(value: str) -> bool | None:
    value = value.lower()
    if value == "yes":
        return True
    if value == "no":
        return False
    return None


def _to_int(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def _is_unset_username(username: object) -> bool:
    return not isinstance(username, str) or not username or username in (USERNAME_PLACEHOLDER, "$USER")


def fill_config_record(
    record: ConfigRecord,
    holder: SSHConfigHolder,
    local_user: str | None = None,
) -> ConfigBlock:
    """
    Overlay the ssh_config computed for record.host onto the record.

    Hostname always replaces host (it resolves an alias). Every other
    directive only fills fields the record leaves unset; a username
    placeholder counts as unset.

    Returns:
        The computed block, for callers that want to inspect it
    """
    assert isinstance(record.host, str) and record.host, "record.host must be set"
    if local_user is None:
        local_user = get_local_user()
    original_host = record.host
    username = None if _is_unset_username(record.username) else record.username
    context = MatchContext(
        hostname=original_host,
        original_hostname=original_host,
        user=username or local_user,
        local_user=local_user,
    )
    result = holder.build_config(context)
    applied: dict[str, object] = {}

    def apply(name: str, value: object) -> None:
        if value is None or value == "":
            return
        setattr(record, name, value)
        applied[name] = value

    hostname = result.get("hostname")
    if hostname:
        apply("host", expand_tokens(hostname, original_host, local_user=local_user))
    if record.port is None:
        apply("port", _to_int(result.get("port")))
    if username is None:
        apply("username", result.get("user") or None)
    if record.compress is None:
        apply("compress", _to_boolean(result.get("compression")))
    if record.agent_forward is None:
        apply("agent_forward", _to_boolean(result.get("forwardagent")))
    if record.try_keyboard is None:
        apply("try_keyboard", _to_boolean(result.get("kbdinteractiveauthentication")))
    if record.password_auth is None:
        apply("password_auth", _to_boolean(result.get("passwordauthentication")))
    connect_timeout = _to_int(result.get("connecttimeout"))
    if record.ready_timeout is None and connect_timeout is not None:
        # ConnectTimeout is in seconds, readyTimeout in milliseconds
        apply("ready_timeout", connect_timeout * 1000)
    if record.debug is None and result.get("loglevel"):
        apply("debug", "DEBUG" in result.get("loglevel").upper())

    identity_agent = result.get("identityagent")
    if record.agent is None and identity_agent and identity_agent.lower() != "none":
        apply("agent", str(expand_path(identity_agent)))

    port = record.port if isinstance(record.port, int) else 22
    remote_user = record.username if isinstance(record.username, str) and not _is_unset_username(record.username) else None
    token_args = dict(
        host=record.host,
        port=port,
        user=remote_user,
        local_user=local_user,
        original_host=original_host,
    )

    identity_file = result.get("identityfile")
    if record.private_key_path is None and identity_file:
        apply("private_key_path", str(expand_path(expand_tokens(identity_file, **token_args))))

    proxy_jump = result.get("proxyjump")
    proxy_command = result.get("proxycommand")
    if record.hop is None and record.proxy is None:
        if proxy_jump and proxy_jump.lower() != "none":
            apply("hop", proxy_jump)
        elif proxy_command and proxy_command.lower() != "none":
            apply("proxy", ProxyConfig(
                type=ProxyType.COMMAND,
                command=expand_tokens(proxy_command, **token_args),
            ))

    log.debug("Config overrides for %s generated from ssh_config files: %s", record.name, applied)
    return result
