from __future__ import annotations

import os
from typing import Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def _raw(name: str) -> Optional[str]:
    """Stripped value of `name`; blank counts as unset."""
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip() or None


def _typed(name: str, default: T, parse: Callable[[str], T], kind: str) -> T:
    value = _raw(name)
    if value is None:
        return default
    try:
        return parse(value)
    except (KeyError, ValueError):
        raise ValueError(f"{name} must be {kind}, got {value!r}") from None


def env_bool(name: str, *, default: bool = False) -> bool:
    """Boolean flag (1/0, true/false, yes/no, on/off); anything else is a config error."""
    return _typed(name, default, lambda v: _BOOL_WORDS[v.lower()], "a boolean")


def env_int(name: str, *, default: int) -> int:
    return _typed(name, default, int, "an integer")


def env_float(name: str, *, default: float) -> float:
    return _typed(name, default, float, "a number")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    # Set-but-blank yields an empty list, unlike the scalar readers.
    value = os.getenv(name)
    if value is None:
        return list(default or [])
    return [part.strip() for part in value.split(separator) if part.strip()]


__all__ = ["env_bool", "env_int", "env_float", "env_list"]
