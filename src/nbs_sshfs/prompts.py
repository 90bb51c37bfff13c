"""
Interactive prompting for missing connection values.

The calculator, the keyboard-interactive handler and the sudo bootstrap
ask for values through a Prompter. A None answer means the user
dismissed the prompt; callers treat it as an abort.
"""
from __future__ import annotations

import asyncio
import getpass
import sys
from collections.abc import Sequence
from typing import Protocol


class Prompter(Protocol):
    """Something that can ask the user for values."""

    async def ask(
        self,
        prompt: str,
        placeholder: str | None = None,
        password: bool = False,
    ) -> str | None:
        """Ask for a value. Password prompts must not echo input."""
        ...

    async def choose(self, message: str, options: Sequence[str]) -> str | None:
        """Ask the user to pick one of options."""
        ...


class ConsolePrompter:
    """Prompts on the controlling terminal, input on stdin, text on stderr."""

    async def ask(
        self,
        prompt: str,
        placeholder: str | None = None,
        password: bool = False,
    ) -> str | None:
        text = f"{prompt} ({placeholder}): " if placeholder else f"{prompt}: "
        reader = getpass.getpass if password else _read_line
        try:
            return await asyncio.to_thread(reader, text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            return None

    async def choose(self, message: str, options: Sequence[str]) -> str | None:
        print(message, file=sys.stderr)
        lowered = {option.lower(): option for option in options}
        while True:
            answer = await self.ask("/".join(options))
            if answer is None or not answer.strip():
                return None
            choice = lowered.get(answer.strip().lower())
            if choice is not None:
                return choice
            print(f"Please answer one of: {', '.join(options)}", file=sys.stderr)


class NullPrompter:
    """Dismisses every prompt, for non-interactive use."""

    async def ask(
        self,
        prompt: str,
        placeholder: str | None = None,
        password: bool = False,
    ) -> str | None:
        return None

    async def choose(self, message: str, options: Sequence[str]) -> str | None:
        return None


def _read_line(text: str) -> str:
    print(text, end="", file=sys.stderr, flush=True)
    line = sys.stdin.readline()
    if not line:
        raise EOFError
    return line.rstrip("\n")
