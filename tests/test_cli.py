"""
Tests for the nbs-sshfs CLI interface.

Tests the command-line interface for:
- Argument parsing
- Printing the resolved config with -G
- Listing the remote path of a config
- Exit code mapping
- Event output with --events flag
"""
from __future__ import annotations

import json
import subprocess
import sys
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from nbs_sshfs.__main__ import EXIT_CANCELLED, EXIT_ERROR, EXIT_OK, create_parser, main, run
from nbs_sshfs.events import read_jsonl_events
from nbs_sshfs.testing import MockSSHServer


def write_configs(path: Path, configs: list[dict]) -> str:
    path.write_text(json.dumps(configs))
    return str(path)


class TestArgumentParsing:
    """Tests for CLI argument parsing."""

    def test_create_parser_defaults(self) -> None:
        args = create_parser().parse_args(["web"])
        assert args.target == "web"
        assert args.config == []
        assert args.ssh_config is None
        assert args.print_config is False
        assert args.flag == []
        assert args.insecure is False
        assert args.events is None
        assert args.verbose == 0
        assert args.quiet is False

    def test_repeatable_options(self) -> None:
        args = create_parser().parse_args(
            ["-c", "a.json", "-c", "b.json", "-F", "cfg", "--flag", "+DF-GE", "--flag", "DEBUG_SSH2", "-vv", "web"]
        )
        assert args.config == ["a.json", "b.json"]
        assert args.ssh_config == ["cfg"]
        assert args.flag == ["+DF-GE", "DEBUG_SSH2"]
        assert args.verbose == 2

    def test_target_required(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args([])


class TestHelpOutput:

    def test_help_output(self) -> None:
        """Test --help shows usage information."""
        result = subprocess.run(
            [sys.executable, "-m", "nbs_sshfs", "--help"],
            capture_output=True,
            text=True,
            cwd=Path(__file__).parent.parent,
            env={
                **subprocess.os.environ,
                "PYTHONPATH": str(Path(__file__).parent.parent / "src"),
            },
        )

        assert result.returncode == 0
        assert "nbs-sshfs" in result.stdout
        assert "config|connection" in result.stdout
        assert "--ssh-config" in result.stdout
        assert "--events" in result.stdout


class TestPrintConfig:

    def test_named_config_censored(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = write_configs(tmp_path / "configs.json", [
            {"name": "web", "host": "web.example", "username": "deploy", "password": "hunter2"},
        ])
        assert main(["-c", path, "-G", "web"]) == EXIT_OK

        out = capsys.readouterr().out
        printed = json.loads(out)
        assert printed["name"] == "web"
        assert printed["host"] == "web.example"
        assert printed["username"] == "deploy"
        assert printed["password"] == "<censored>"
        assert "hunter2" not in out

    def test_ssh_config_alias(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
        monkeypatch: pytest.MonkeyPatch,
        prompter_factory: Callable[..., object],
    ) -> None:
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text(
            "Host myserver\n"
            "    HostName actual.server.com\n"
            "    Port 2222\n"
            "    User admin\n"
        )
        prompter = prompter_factory({"password": "pw"})
        with patch("nbs_sshfs.__main__.ConsolePrompter", return_value=prompter):
            assert main(["-F", str(ssh_config), "-G", "myserver"]) == EXIT_OK

        printed = json.loads(capsys.readouterr().out)
        assert printed["host"] == "actual.server.com"
        assert printed["port"] == 2222
        assert printed["username"] == "admin"
        assert printed["password"] == "<censored>"

    def test_overlay_disabled_by_flag(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
        monkeypatch: pytest.MonkeyPatch,
        prompter_factory: Callable[..., object],
    ) -> None:
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        ssh_config = tmp_path / "ssh_config"
        ssh_config.write_text("Host myserver\n    HostName actual.server.com\n")
        prompter = prompter_factory({"password": "pw"})
        with patch("nbs_sshfs.__main__.ConsolePrompter", return_value=prompter):
            code = main(["-F", str(ssh_config), "--flag", "OPENSSH-CONFIG=false", "-G", "me@myserver"])
        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out)["host"] == "myserver"

    def test_events_written(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = write_configs(tmp_path / "configs.json", [
            {"name": "web", "host": "web.example", "username": "deploy", "password": "hunter2"},
        ])
        events_path = tmp_path / "events.jsonl"
        assert main(["-c", path, "--events", str(events_path), "-G", "web"]) == EXIT_OK

        events = read_jsonl_events(events_path)
        assert [e.event_type for e in events] == ["RESOLVE"]
        assert events[0].data["config"]["password"] == "<censored>"


class TestExitCodes:

    def test_unknown_target(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["-G", "not a target!"]) == EXIT_ERROR
        assert "Error: Unknown config or invalid connection string" in capsys.readouterr().err

    def test_dismissed_prompt(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
        monkeypatch: pytest.MonkeyPatch,
        prompter_factory: Callable[..., object],
    ) -> None:
        monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)
        path = write_configs(tmp_path / "configs.json", [
            {"name": "web", "host": "web.example", "username": "deploy"},
        ])
        with patch("nbs_sshfs.__main__.ConsolePrompter", return_value=prompter_factory()):
            assert main(["-c", path, "-G", "web"]) == EXIT_CANCELLED
        assert "Cancelled:" in capsys.readouterr().err

    def test_configuration_required(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
        prompter_factory: Callable[..., object],
    ) -> None:
        path = write_configs(tmp_path / "configs.json", [
            {"name": "web", "host": "web.example", "username": "deploy", "password": "pw", "passphrase": True},
        ])
        with patch("nbs_sshfs.__main__.ConsolePrompter", return_value=prompter_factory(choice="Configure")):
            assert main(["-c", path, "-G", "web"]) == EXIT_ERROR
        assert "Configuration required:" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_connection_failure(
        self,
        tmp_path: Path,
        unused_port: int,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        path = write_configs(tmp_path / "configs.json", [
            {"name": "down", "host": "127.0.0.1", "port": unused_port, "username": "u", "password": "p"},
        ])
        args = create_parser().parse_args(["-c", path, "--insecure", "down"])
        assert await run(args) == EXIT_ERROR
        assert f"Couldn't connect to 127.0.0.1:{unused_port}" in capsys.readouterr().err


class TestListing:

    @pytest.mark.asyncio
    async def test_lists_root(
        self,
        mock_ssh_server: MockSSHServer,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        remote = tmp_path / "remote"
        remote.mkdir()
        (remote / "b.txt").write_text("b")
        (remote / "a.txt").write_text("a")
        path = write_configs(tmp_path / "configs.json", [
            {
                "name": "mock",
                "host": "127.0.0.1",
                "port": mock_ssh_server.port,
                "username": "test",
                "password": "test",
                "root": str(remote),
            },
        ])
        args = create_parser().parse_args(["-c", path, "--insecure", "mock"])
        assert await run(args) == EXIT_OK
        assert capsys.readouterr().out.splitlines() == ["a.txt", "b.txt"]
