"""Argument vector checks.

Arguments are always passed to the OS as discrete elements. Nothing here
joins, quotes or splits them.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

__all__ = ["find_joined_flags", "validate_argv"]

# "-S 5", "--limit 500": a flag and its value pushed as one element
_JOINED_FLAG_RE = re.compile(r"^--?[A-Za-z][\w-]*\s+\S")


def validate_argv(args: Iterable[str]) -> tuple[str, ...]:
    """Return ``args`` as a tuple, rejecting anything that is not a str.

    Raises:
        TypeError: if ``args`` is a bare string or contains a non-str element
    """
    if isinstance(args, (str, bytes)):
        raise TypeError("args must be a sequence of strings, not a single string")

    result = tuple(args)
    for index, arg in enumerate(result):
        if not isinstance(arg, str):
            raise TypeError(
                f"args[{index}] must be str, got {type(arg).__name__}"
            )
    return result


def find_joined_flags(args: Iterable[str]) -> list[str]:
    """List elements that look like a flag and its value joined by whitespace.

    ``["-S 5"]`` reaches the program as one argument, which is rarely what the
    caller meant. These are reported, never rewritten.
    """
    return [arg for arg in args if _JOINED_FLAG_RE.match(arg)]
