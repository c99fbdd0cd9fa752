"""Exception taxonomy for streaming sessions."""

from __future__ import annotations

from typing import Optional


class SessionError(RuntimeError):
    """Base class for failures that abort a streaming session."""


class ConnectError(SessionError):
    """Invalid target, or every connection attempt failed."""


class ConfigError(SessionError):
    """Session parameters rejected before any command was sent."""


class TransportError(SessionError):
    """Link failure after the connection was established."""


def format_exception(exc: BaseException) -> str:
    """Flatten an exception and its cause chain into one readable line.

    Example:
        >>> try:
        ...     raise ConnectError("no route") from OSError("refused")
        ... except ConnectError as e:
        ...     format_exception(e)
        'ConnectError: no route | Inner OSError: refused'
    """
    parts = [f"{type(exc).__name__}: {exc}"]
    seen = {id(exc)}
    inner: Optional[BaseException] = exc.__cause__ or exc.__context__
    while inner is not None and id(inner) not in seen:
        seen.add(id(inner))
        parts.append(f"Inner {type(inner).__name__}: {inner}")
        inner = inner.__cause__ or inner.__context__
    return " | ".join(parts)
