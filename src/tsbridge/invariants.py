"""Invariant markers for the bridge internals."""

from __future__ import annotations

from typing import NoReturn, TypeVar

from tsbridge.exceptions import NeverThrown

T = TypeVar("T")


def _render_env(env: dict[str, object]) -> str:
    if not env:
        return ""
    parts = [f"{key}={env[key]!r}" for key in sorted(env)]
    return " (" + ", ".join(parts) + ")"


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as unreachable.

    The env payload is attached to the raised exception for diagnosis only.
    """
    message = (reason or "never() marker reached") + _render_env(env)
    raise NeverThrown(message, env=env)


def require_not_none(value: T | None, *, reason: str = "", **env: object) -> T:
    if value is None:
        never(reason or "required value is None", **env)
    return value
