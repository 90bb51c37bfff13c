"""
Cross-platform path handling.

Provides:
- Platform-appropriate SSH directory and ssh_config paths
- The PuTTY session directory used off Windows
- Path expansion
"""
from __future__ import annotations

import getpass
import os
import sys
from pathlib import Path


def is_windows() -> bool:
    """Check if running on Windows."""
    return sys.platform == "win32"


def get_ssh_dir() -> Path:
    """
    Get the platform-appropriate SSH directory.

    Returns:
        ~/.ssh on Unix, %USERPROFILE%\\.ssh on Windows
    """
    if is_windows():
        userprofile = os.environ.get("USERPROFILE")
        if userprofile:
            return Path(userprofile) / ".ssh"
        home = os.environ.get("HOME")
        if home:
            return Path(home) / ".ssh"
        return Path.home() / ".ssh"
    return Path.home() / ".ssh"


def get_config_path() -> Path:
    """Get the per-user ssh_config path."""
    return get_ssh_dir() / "config"


def get_system_config_path() -> Path:
    """
    Get the system-wide SSH config file path.

    Returns:
        Path to system SSH config file (/etc/ssh/ssh_config on Unix)
    """
    if is_windows():
        # Windows OpenSSH uses ProgramData
        program_data = os.environ.get("ProgramData", "C:\\ProgramData")
        return Path(program_data) / "ssh" / "ssh_config"
    return Path("/etc/ssh/ssh_config")


def get_default_ssh_config_paths() -> list[Path]:
    """User config first, then the system config."""
    return [get_config_path(), get_system_config_path()]


def get_putty_sessions_dir() -> Path:
    """
    Get the directory holding saved PuTTY sessions on Unix-like systems.

    Each session is a file named after the URL-encoded session name.
    """
    return Path.home() / ".putty" / "sessions"


def get_local_user() -> str:
    """Get the name of the local OS user."""
    return getpass.getuser()


def expand_path(path: str | Path) -> Path:
    """
    Expand a path, handling ~ and environment variables.

    On Unix: expands ~ to $HOME
    On Windows: expands ~ to %USERPROFILE%, also expands %VAR% syntax

    Args:
        path: Path string or Path object to expand

    Returns:
        Expanded Path object
    """
    path_str = str(path)
    if is_windows():
        path_str = os.path.expandvars(path_str)
    return Path(path_str).expanduser()
