"""
Tests for ConnectionCalculator.

Tests cover:
- Resolution state handling (idempotence, concurrent calculations)
- Variable substitution and username placeholders
- PuTTY session lookup, explicit and speculative
- The ssh_config overlay and the OPENSSH-CONFIG flag
- Key loading, prompts and the authentication fallback policy
- Final validation
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import asyncssh
import pytest

from nbs_sshfs.calculator import ConnectionCalculator
from nbs_sshfs.errors import (
    ConfigurationRequired,
    ConfigValueError,
    KeyLoadError,
    NoAuthenticationMethod,
    PromptCancelled,
    SessionStoreError,
)
from nbs_sshfs.events import EventCollector, EventEmitter, EventType
from nbs_sshfs.flags import FlagStore
from nbs_sshfs.records import ConfigRecord, ProxyType, ResolutionState
from nbs_sshfs.session_store import SessionStore
from nbs_sshfs.ssh_config import parse_contents


def make_calculator(
    prompter: object = None,
    env: dict[str, str] | None = None,
    sessions_dir: Path | None = None,
    flags: list[str] | None = None,
    ssh_config: str = "",
    emitter: EventEmitter | None = None,
) -> ConnectionCalculator:
    return ConnectionCalculator(
        prompter=prompter,  # type: ignore[arg-type]
        session_store=SessionStore(sessions_dir) if sessions_dir else None,
        flags=FlagStore(global_flags=flags or []),
        ssh_config=parse_contents(ssh_config, "test"),
        env=env or {},
        emitter=emitter,
        local_user=lambda: "localuser",
    )


def write_session(directory: Path, name: str, **props: object) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / name).write_text("".join(f"{k}={v}\n" for k, v in props.items()))


class TestResolutionState:

    @pytest.mark.asyncio
    async def test_result_is_resolved_clone(self) -> None:
        record = ConfigRecord(name="web", host="web", username="u", password="pw")
        result = await make_calculator().calculate(record)
        assert result is not record
        assert result.state is ResolutionState.RESOLVED
        assert result.calculated is result
        assert record.state is ResolutionState.UNRESOLVED

    @pytest.mark.asyncio
    async def test_resolved_returned_unchanged(self) -> None:
        calculator = make_calculator()
        result = await calculator.calculate(ConfigRecord(name="web", host="web", username="u", password="pw"))
        assert await calculator.calculate(result) is result

    @pytest.mark.asyncio
    async def test_concurrent_calculations_of_one_record(self) -> None:
        record = ConfigRecord(name="web", host="web", username="u", password="pw")
        calculator = make_calculator()
        first, second = await asyncio.gather(calculator.calculate(record), calculator.calculate(record))
        assert first is not second
        assert first.state is second.state is ResolutionState.RESOLVED
        assert record.state is ResolutionState.UNRESOLVED

    @pytest.mark.asyncio
    async def test_resolve_event_censored(self) -> None:
        collector = EventCollector()
        calculator = make_calculator(emitter=EventEmitter(collector=collector))
        await calculator.calculate(ConfigRecord(name="web", host="web", username="u", password="pw"))
        [event] = collector.get_by_type(EventType.RESOLVE)
        assert event.data["config"]["name"] == "web"
        assert event.data["config"]["password"] == "<censored>"


class TestVariables:

    @pytest.mark.asyncio
    async def test_host_port_and_username(self) -> None:
        env = {"HOST": "db.example.com", "PORT": "2200", "ME": "deploy"}
        record = ConfigRecord(name="db", host="$HOST", port="$PORT", username="$ME", password="pw")
        result = await make_calculator(env=env).calculate(record)
        assert result.host == "db.example.com"
        assert result.port == 2200
        assert result.username == "deploy"

    @pytest.mark.asyncio
    async def test_username_placeholders_become_local_user(self) -> None:
        for placeholder in ("$USER", "$USERNAME"):
            record = ConfigRecord(name="x", host="h", username=placeholder, password="pw")
            result = await make_calculator().calculate(record)
            assert result.username == "localuser"

    @pytest.mark.asyncio
    async def test_agent_from_environment(self) -> None:
        record = ConfigRecord(name="x", host="h", username="u")
        result = await make_calculator(env={"SSH_AUTH_SOCK": "/tmp/agent"}).calculate(record)
        assert result.agent == "/tmp/agent"
        assert result.password is None


class TestPuttySessions:

    @pytest.mark.asyncio
    async def test_explicit_session(self, tmp_path: Path) -> None:
        write_session(
            tmp_path, "Prod",
            HostName="admin@prod.example.com", PortNumber=2222,
            ProxyMethod=2, ProxyHost="socks.example.com", ProxyPort=1080,
        )
        record = ConfigRecord(name="prod", putty="prod", password="pw")
        result = await make_calculator(sessions_dir=tmp_path).calculate(record)
        assert result.host == "prod.example.com"
        assert result.username == "admin"
        assert result.port == 2222
        assert result.proxy.type is ProxyType.SOCKS5
        assert (result.proxy.host, result.proxy.port) == ("socks.example.com", 1080)

    @pytest.mark.asyncio
    async def test_record_port_wins(self, tmp_path: Path) -> None:
        write_session(tmp_path, "Prod", HostName="prod.example.com", PortNumber=2222)
        record = ConfigRecord(name="prod", putty="Prod", port=22, username="u", password="pw")
        result = await make_calculator(sessions_dir=tmp_path).calculate(record)
        assert result.port == 22

    @pytest.mark.asyncio
    async def test_missing_explicit_session(self, tmp_path: Path) -> None:
        record = ConfigRecord(name="prod", putty="ghost")
        with pytest.raises(SessionStoreError, match="Couldn't find the requested PuTTY session 'ghost'"):
            await make_calculator(sessions_dir=tmp_path).calculate(record)

    @pytest.mark.asyncio
    async def test_non_ssh_session(self, tmp_path: Path) -> None:
        write_session(tmp_path, "old", HostName="old", Protocol="telnet")
        with pytest.raises(SessionStoreError, match="isn't a SSH session"):
            await make_calculator(sessions_dir=tmp_path).calculate(ConfigRecord(name="old", putty="old"))

    @pytest.mark.asyncio
    async def test_putty_true_needs_host(self, tmp_path: Path) -> None:
        with pytest.raises(SessionStoreError, match="'putty' was true but 'host' is empty/missing"):
            await make_calculator(sessions_dir=tmp_path).calculate(ConfigRecord(name="x", putty=True))

    @pytest.mark.asyncio
    async def test_putty_true_matches_host(self, tmp_path: Path) -> None:
        write_session(tmp_path, "whatever", HostName="box.example.com", PortNumber=2022)
        record = ConfigRecord(name="x", putty=True, host="box.example.com", username="u", password="pw")
        result = await make_calculator(sessions_dir=tmp_path).calculate(record)
        assert result.port == 2022

    @pytest.mark.asyncio
    async def test_speculative_lookup_for_instant_connection(self, tmp_path: Path) -> None:
        write_session(tmp_path, "box.example.com", HostName="box.example.com", UserName="boxuser")
        record = ConfigRecord(
            name="@box.example.com", host="box.example.com", username="$USERNAME",
            instant_connection=True, password="pw",
        )
        result = await make_calculator(sessions_dir=tmp_path).calculate(record)
        assert result.username == "boxuser"

    @pytest.mark.asyncio
    async def test_speculative_miss_is_silent(self, tmp_path: Path) -> None:
        record = ConfigRecord(
            name="@other", host="other", username="u", instant_connection=True, password="pw",
        )
        result = await make_calculator(sessions_dir=tmp_path).calculate(record)
        assert result.host == "other"

    @pytest.mark.asyncio
    async def test_unsupported_proxy_method(self, tmp_path: Path) -> None:
        write_session(tmp_path, "tel", HostName="h", ProxyMethod=4, ProxyHost="p")
        with pytest.raises(SessionStoreError, match="unsupported proxy method"):
            await make_calculator(sessions_dir=tmp_path).calculate(ConfigRecord(name="t", putty="tel"))

    @pytest.mark.asyncio
    async def test_username_from_environment(self, tmp_path: Path) -> None:
        write_session(tmp_path, "s", HostName="h", UserNameFromEnvironment=1)
        calculator = make_calculator(sessions_dir=tmp_path, env={"USER": "envuser"})
        result = await calculator.calculate(ConfigRecord(name="s", putty="s", password="pw"))
        assert result.username == "envuser"


class TestOpenSSHOverlay:

    SSH_CONFIG = "Host alias\n  HostName real.example.com\n  Port 2200\n  User cfguser\n"

    @pytest.mark.asyncio
    async def test_on_by_default_for_instant_connections(self) -> None:
        record = ConfigRecord(
            name="@alias", host="alias", username="$USERNAME", instant_connection=True, password="pw",
        )
        result = await make_calculator(ssh_config=self.SSH_CONFIG).calculate(record)
        assert (result.host, result.port, result.username) == ("real.example.com", 2200, "cfguser")

    @pytest.mark.asyncio
    async def test_off_by_default_for_named_configs(self) -> None:
        record = ConfigRecord(name="alias", host="alias", username="u", password="pw")
        result = await make_calculator(ssh_config=self.SSH_CONFIG).calculate(record)
        assert result.host == "alias"

    @pytest.mark.asyncio
    async def test_flag_enables_overlay(self) -> None:
        record = ConfigRecord(name="alias", host="alias", username="u", password="pw")
        calculator = make_calculator(ssh_config=self.SSH_CONFIG, flags=["+OPENSSH-CONFIG"])
        result = await calculator.calculate(record)
        assert result.host == "real.example.com"
        assert result.username == "u"

    @pytest.mark.asyncio
    async def test_record_flag_disables_overlay(self) -> None:
        record = ConfigRecord(
            name="@alias", host="alias", username="u", instant_connection=True,
            password="pw", flags=["-OPENSSH-CONFIG"],
        )
        result = await make_calculator(ssh_config=self.SSH_CONFIG).calculate(record)
        assert result.host == "alias"

    @pytest.mark.asyncio
    async def test_invalid_flag_value(self) -> None:
        record = ConfigRecord(name="alias", host="alias", username="u", password="pw")
        calculator = make_calculator(flags=["OPENSSH-CONFIG=maybe"])
        with pytest.raises(ConfigValueError) as exc_info:
            await calculator.calculate(record)
        assert "OPENSSH-CONFIG" in str(exc_info.value)
        assert exc_info.value.context.config_name == "alias"
        assert "maybe" in exc_info.value.context.original_error


class TestSecrets:

    @pytest.mark.asyncio
    async def test_prompts_for_missing_values(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory({"password": "pw", "host": "asked.example.com", "username": "asked"})
        result = await make_calculator(prompter=prompter).calculate(ConfigRecord(name="x", password=True))
        assert (result.host, result.username, result.password) == ("asked.example.com", "asked", "pw")
        assert [p[2] for p in prompter.asked] == [False, False, True]

    @pytest.mark.asyncio
    async def test_dismissed_prompt(self, prompter_factory: Callable) -> None:
        with pytest.raises(PromptCancelled, match="Prompt for host was dismissed") as exc_info:
            await make_calculator(prompter=prompter_factory()).calculate(ConfigRecord(name="x"))
        assert exc_info.value.field_name == "host"

    @pytest.mark.asyncio
    async def test_password_disables_agent(self) -> None:
        record = ConfigRecord(name="x", host="h", username="u", password="pw", agent="/tmp/a", agent_forward=True)
        result = await make_calculator().calculate(record)
        assert result.agent is None
        assert result.agent_forward is False

    @pytest.mark.asyncio
    async def test_key_loaded(self, tmp_path: Path) -> None:
        key_path = tmp_path / "id"
        key_path.write_bytes(asyncssh.generate_private_key("ssh-ed25519").export_private_key())
        record = ConfigRecord(name="x", host="h", username="u", private_key_path=str(key_path))
        result = await make_calculator().calculate(record)
        assert result.private_key == key_path.read_bytes()
        assert result.password is None

    @pytest.mark.asyncio
    async def test_key_path_variable(self, tmp_path: Path) -> None:
        (tmp_path / "id").write_bytes(b"KEY")
        record = ConfigRecord(name="x", host="h", username="u", private_key_path="$KEYS/id")
        result = await make_calculator(env={"KEYS": str(tmp_path)}).calculate(record)
        assert result.private_key == b"KEY"

    @pytest.mark.asyncio
    async def test_missing_key(self, tmp_path: Path) -> None:
        record = ConfigRecord(name="x", host="h", username="u", private_key_path=str(tmp_path / "nope"))
        with pytest.raises(KeyLoadError) as exc_info:
            await make_calculator().calculate(record)
        assert exc_info.value.reason == "file_not_found"

    @pytest.mark.asyncio
    async def test_passphrase_prompted_with_key(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory({"passphrase": "secret"})
        record = ConfigRecord(name="x", host="h", username="u", private_key=b"KEY", passphrase=True)
        result = await make_calculator(prompter=prompter).calculate(record)
        assert result.passphrase == "secret"

    @pytest.mark.asyncio
    async def test_passphrase_without_key_configure(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory(choice="Configure")
        record = ConfigRecord(name="x", host="h", username="u", password="pw", passphrase=True)
        with pytest.raises(ConfigurationRequired):
            await make_calculator(prompter=prompter).calculate(record)
        assert prompter.choices[0][1] == ["Configure", "Ignore"]

    @pytest.mark.asyncio
    async def test_passphrase_without_key_ignore(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory(choice="Ignore")
        record = ConfigRecord(name="x", host="h", username="u", password="pw", passphrase=True)
        result = await make_calculator(prompter=prompter).calculate(record)
        assert result.passphrase is None

    @pytest.mark.asyncio
    async def test_fallback_password_prompt(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory({"password": "typed"})
        result = await make_calculator(prompter=prompter).calculate(ConfigRecord(name="x", host="h", username="u"))
        assert result.password == "typed"

    @pytest.mark.asyncio
    async def test_password_auth_false_relies_on_keyboard(self, prompter_factory: Callable) -> None:
        prompter = prompter_factory({"password": "typed"})
        record = ConfigRecord(name="x", host="h", username="u", password_auth=False)
        result = await make_calculator(prompter=prompter).calculate(record)
        assert result.password is None
        assert prompter.asked == []

    @pytest.mark.asyncio
    async def test_no_authentication_method(self) -> None:
        record = ConfigRecord(name="x", host="h", username="u", password_auth=False, try_keyboard=False)
        with pytest.raises(NoAuthenticationMethod):
            await make_calculator().calculate(record)


class TestValidation:

    @pytest.mark.asyncio
    async def test_bad_hostname(self) -> None:
        record = ConfigRecord(name="x", host="bad host", username="u", password="pw")
        with pytest.raises(ConfigValueError, match="hostname contains forbidden character: space"):
            await make_calculator().calculate(record)

    @pytest.mark.asyncio
    async def test_bad_port(self) -> None:
        record = ConfigRecord(name="x", host="h", port="http", username="u", password="pw")
        with pytest.raises(ConfigValueError, match="The string 'http' is not a valid port number"):
            await make_calculator().calculate(record)

    @pytest.mark.asyncio
    async def test_bad_username(self) -> None:
        record = ConfigRecord(name="x", host="h", username="a;b", password="pw")
        with pytest.raises(ConfigValueError, match="username contains forbidden character"):
            await make_calculator().calculate(record)

    @pytest.mark.asyncio
    async def test_empty_port_variable_means_default(self) -> None:
        record = ConfigRecord(name="x", host="h", port="$NOPE", username="u", password="pw")
        result = await make_calculator().calculate(record)
        assert result.port is None
