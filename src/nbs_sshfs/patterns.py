"""
Glob pattern matching for ssh_config Host and Match rules.

Patterns support:
- * matches any run of characters (including none)
- ? matches exactly one character
- ! prefix negates a single pattern in a list

Matching is case-sensitive and anchored to the whole input.
"""
from __future__ import annotations

import re
from functools import lru_cache


@lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    """Translate a glob into an anchored regular expression."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


def match_glob(value: str, pattern: str) -> bool:
    """Check whether the whole of value matches the glob pattern."""
    return _compile_glob(pattern).fullmatch(value) is not None


def check_pattern(value: str, pattern: str) -> bool | None:
    """
    Evaluate a single, possibly negated, pattern.

    Returns:
        True for a positive match, False for a negated match, and None
        when the pattern says nothing about the value.
    """
    pattern = pattern.strip()
    if pattern == "*":
        return True
    negate = pattern.startswith("!")
    if negate:
        pattern = pattern[1:]
    if not match_glob(value, pattern):
        return None
    return not negate


def match_list(value: str, patterns: str) -> bool:
    """
    Evaluate a comma-separated pattern list left to right.

    The first pattern that decides (positive or negated match) wins.
    A list where no pattern decides does not match.

    Example:
        match_list("host.example.com", "!host.*,*")  # False
    """
    for pattern in patterns.split(","):
        result = check_pattern(value, pattern)
        if result is not None:
            return result
    return False


def match_host_patterns(hostname: str, patterns: list[str]) -> bool:
    """
    Evaluate the pattern list of a Host line.

    Any negated match excludes the host outright, otherwise at least one
    positive match is required.
    """
    allowed = False
    for pattern in patterns:
        result = check_pattern(hostname, pattern)
        if result is False:
            return False
        if result is True:
            allowed = True
    return allowed
