"""
Sudo/SFTP bootstrap over an interactive shell channel.

Used when a config sets a custom sftp command or asks for sudo. The shell
is driven through a small line protocol:

    sudo -S [-u USER] bash -c "echo SUDO OK; cat | bash"   (only with sudo)
    echo SFTP READY
    <sftp command>

after which the channel carries raw SFTP traffic.

SessionBootstrap is the pure state machine: it is fed remote output and
returns the actions to perform. run_bootstrap drives it over an asyncssh
session and starts the SFTP client.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import asyncssh

from nbs_sshfs.errors import BootstrapCancelled, BootstrapProtocolError, ErrorContext
from nbs_sshfs.events import EventEmitter, EventType
from nbs_sshfs.prompts import NullPrompter, Prompter

log = logging.getLogger("nbs_sshfs.bootstrap")

SUDO_OK = "SUDO OK"
SFTP_READY = "SFTP READY"
SUDO_PROMPT_PREFIX = "[sudo"
# Debian, RHEL and Arch layouts, then whatever sftp-server is on PATH
SFTP_SERVER_PATHS = (
    "/usr/lib/openssh/sftp-server",
    "/usr/libexec/openssh/sftp-server",
    "/usr/lib/ssh/sftp-server",
)
DEFAULT_SFTP_SERVER = (
    f"for p in {' '.join(SFTP_SERVER_PATHS)}; "
    'do [ -x "$p" ] && exec "$p"; done; exec sftp-server'
)

_SUDO_COMMAND = re.compile(r"^sudo(?:\s+-u\s+(\S+))?\s+(.+)$")


class BootstrapState(Enum):
    IDLE = "idle"
    AWAITING_SUDO_OK = "awaiting_sudo_ok"
    AWAITING_SFTP_READY = "awaiting_sftp_ready"
    STREAMING = "streaming"
    CLOSED = "closed"


class ActionKind(Enum):
    WRITE = "write"
    ASK_PASSWORD = "ask_password"
    START_SFTP = "start_sftp"


@dataclass(frozen=True)
class BootstrapAction:
    kind: ActionKind
    text: str = ""


def normalize_sftp_command(
    command: str | None,
    sudo: str | bool | None = None,
) -> tuple[str | None, str | bool | None]:
    """
    Strip a leading 'sudo [-u USER]' from an sftp command.

    The stripped user (or True for plain sudo) becomes the sudo setting,
    unless one was configured explicitly.

        >>> normalize_sftp_command("sudo -u deploy /usr/lib/openssh/sftp-server")
        ('/usr/lib/openssh/sftp-server', 'deploy')
    """
    if not command:
        return command, sudo
    match = _SUDO_COMMAND.match(command.strip())
    if not match:
        return command, sudo
    user, rest = match.groups()
    if not sudo:
        sudo = user or True
    return rest, sudo


def sudo_command(sudo: str | bool) -> str:
    user = f"-u {sudo} " if isinstance(sudo, str) else ""
    return f'sudo -S {user}bash -c "echo {SUDO_OK}; cat | bash"'


class SessionBootstrap:
    """
    State machine for the sudo/SFTP handshake.

    IDLE -> AWAITING_SUDO_OK -> AWAITING_SFTP_READY -> STREAMING, with
    CLOSED reachable from any state. AWAITING_SUDO_OK is skipped without
    sudo.
    """

    def __init__(
        self,
        command: str | None = None,
        sudo: str | bool | None = None,
        password: str | None = None,
    ) -> None:
        command, sudo = normalize_sftp_command(command, sudo)
        self.command = command or DEFAULT_SFTP_SERVER
        self.sudo = sudo
        self._password = password
        self._password_used = False
        self._stdout = ""
        self._stderr = ""
        self.state = BootstrapState.IDLE

    def start(self) -> list[BootstrapAction]:
        assert self.state is BootstrapState.IDLE, f"bootstrap already started ({self.state})"
        if self.sudo:
            self.state = BootstrapState.AWAITING_SUDO_OK
            return [BootstrapAction(ActionKind.WRITE, sudo_command(self.sudo) + "\n")]
        return self._await_ready()

    def _await_ready(self) -> list[BootstrapAction]:
        self.state = BootstrapState.AWAITING_SFTP_READY
        return [BootstrapAction(ActionKind.WRITE, f"echo {SFTP_READY}\n")]

    def feed_stdout(self, data: str) -> list[BootstrapAction]:
        """Feed stdout text; complete lines are checked for sentinels."""
        actions: list[BootstrapAction] = []
        self._stdout += data
        while "\n" in self._stdout and self.state is not BootstrapState.STREAMING:
            line, self._stdout = self._stdout.split("\n", 1)
            line = line.rstrip("\r")
            if self.state is BootstrapState.AWAITING_SUDO_OK and line == SUDO_OK:
                log.debug("Sudo accepted")
                actions += self._await_ready()
            elif self.state is BootstrapState.AWAITING_SFTP_READY and line == SFTP_READY:
                self.state = BootstrapState.STREAMING
                actions.append(BootstrapAction(ActionKind.WRITE, self.command + "\n"))
                actions.append(BootstrapAction(ActionKind.START_SFTP))
            else:
                log.debug("Ignoring shell output: %r", line)
        return actions

    def feed_stderr(self, data: str) -> list[BootstrapAction]:
        """
        Feed stderr text.

        While waiting for sudo, a '[sudo' line (complete or not) is a
        password prompt and any other complete line is fatal.

        Raises:
            BootstrapProtocolError: Unexpected stderr while waiting for sudo
        """
        if self.state is not BootstrapState.AWAITING_SUDO_OK:
            if data.strip():
                log.debug("Shell stderr: %r", data)
            return []
        self._stderr += data
        actions: list[BootstrapAction] = []
        while self._stderr:
            stripped = self._stderr.lstrip("\r\n")
            if stripped.startswith(SUDO_PROMPT_PREFIX):
                line, sep, rest = stripped.partition("\n")
                self._stderr = rest if sep else ""
                actions.append(self._password_prompt(line.rstrip("\r")))
                continue
            if "\n" not in stripped:
                self._stderr = stripped
                break
            line = stripped.split("\n", 1)[0].rstrip("\r")
            raise BootstrapProtocolError(
                f"Unexpected output while waiting for sudo: {line}",
                remote_text=line,
            )
        return actions

    def _password_prompt(self, prompt: str) -> BootstrapAction:
        if isinstance(self._password, str) and not self._password_used:
            self._password_used = True
            return BootstrapAction(ActionKind.WRITE, self._password + "\n")
        return BootstrapAction(ActionKind.ASK_PASSWORD, prompt)

    def provide_password(self, password: str | None, prompt: str = "") -> BootstrapAction:
        """
        Answer a password prompt.

        Raises:
            BootstrapProtocolError: No password was given
        """
        if password is None:
            raise BootstrapProtocolError(
                "Sudo asked for a password but none was provided",
                remote_text=prompt,
            )
        return BootstrapAction(ActionKind.WRITE, password + "\n")

    def channel_closed(self) -> None:
        """
        The shell closed before streaming.

        Raises:
            BootstrapProtocolError: Closed while waiting for sudo
            BootstrapCancelled: Closed while waiting for SFTP READY
        """
        state = self.state
        self.state = BootstrapState.CLOSED
        if state is BootstrapState.AWAITING_SUDO_OK:
            remote_text = (self._stderr + self._stdout).strip()
            raise BootstrapProtocolError(
                "Shell closed before sudo succeeded",
                remote_text=remote_text,
            )
        if state is BootstrapState.AWAITING_SFTP_READY:
            raise BootstrapCancelled("Shell closed before SFTP was ready")


async def run_bootstrap(
    conn: asyncssh.SSHClientConnection,
    machine: SessionBootstrap,
    prompter: Prompter | None = None,
    emitter: EventEmitter | None = None,
    config_name: str | None = None,
) -> asyncssh.SFTPClient:
    """
    Run the handshake on a new shell session and start SFTP on it.

    Sentinel waits are unbounded; only the remote closing the channel ends
    them early.
    """
    prompter = prompter or NullPrompter()
    writer, reader, stderr = await conn.open_session(encoding=None)
    context = ErrorContext(config_name=config_name)

    def transition(previous: BootstrapState) -> None:
        if machine.state is not previous:
            log.debug("Bootstrap %s -> %s", previous.value, machine.state.value)
            if emitter:
                emitter.emit(
                    EventType.BOOTSTRAP,
                    config=config_name,
                    from_state=previous.value,
                    to_state=machine.state.value,
                )

    async def perform(actions: list[BootstrapAction]) -> bool:
        for action in actions:
            if action.kind is ActionKind.WRITE:
                writer.write(action.text.encode())
            elif action.kind is ActionKind.ASK_PASSWORD:
                answer = await prompter.ask(action.text or "Password for sudo", "Password", password=True)
                writer.write(machine.provide_password(answer, action.text).text.encode())
            else:
                return True
        return False

    streams = {"stdout": reader, "stderr": stderr}
    pending: dict[str, asyncio.Future] = {}
    try:
        previous = machine.state
        await perform(machine.start())
        transition(previous)
        started = False
        while not started:
            for name, stream in streams.items():
                if name not in pending:
                    pending[name] = asyncio.ensure_future(stream.read(4096))
            done, _ = await asyncio.wait(pending.values(), return_when=asyncio.FIRST_COMPLETED)
            for name in ("stdout", "stderr"):
                task = pending.get(name)
                if task is None or task not in done:
                    continue
                del pending[name]
                data: bytes = task.result()
                previous = machine.state
                if not data:
                    # EOF on stdout means the shell is gone
                    del streams[name]
                    if name == "stdout":
                        try:
                            machine.channel_closed()
                        finally:
                            transition(previous)
                    continue
                text = data.decode("utf-8", errors="replace")
                if name == "stdout":
                    actions = machine.feed_stdout(text)
                else:
                    actions = machine.feed_stderr(text)
                started = await perform(actions)
                transition(previous)
                if started:
                    break
    except BaseException as e:
        if isinstance(e, (BootstrapProtocolError, BootstrapCancelled)):
            e.context.config_name = e.context.config_name or context.config_name
        writer.close()
        raise
    finally:
        for task in pending.values():
            task.cancel()

    client = await _start_sftp_client(conn, reader, writer)
    if emitter:
        emitter.emit(EventType.SFTP, config=config_name, subsystem=False, command=machine.command)
    return client


async def _start_sftp_client(
    conn: asyncssh.SSHClientConnection,
    reader: Any,
    writer: Any,
) -> asyncssh.SFTPClient:
    loop = asyncio.get_running_loop()
    return await asyncssh.sftp.start_sftp_client(
        conn,
        loop,
        utf8_decode_errors="strict",
        reader=reader,
        writer=writer,
        path_encoding="utf-8",
        path_errors="strict",
        sftp_version=asyncssh.sftp.MIN_SFTP_VERSION,
    )
