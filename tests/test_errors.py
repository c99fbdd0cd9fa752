from __future__ import annotations

from daqifi_cli.errors import ConfigError, ConnectError, SessionError, TransportError, format_exception


def test_taxonomy() -> None:
    for error_type in (ConnectError, ConfigError, TransportError):
        assert issubclass(error_type, SessionError)
    assert issubclass(SessionError, RuntimeError)


def test_format_exception_follows_cause_chain() -> None:
    try:
        try:
            raise ConnectionRefusedError("refused")
        except OSError as e:
            raise ConnectError("Unable to connect") from e
    except ConnectError as e:
        text = format_exception(e)

    assert text == "ConnectError: Unable to connect | Inner ConnectionRefusedError: refused"


def test_format_exception_single() -> None:
    assert format_exception(ValueError("bad")) == "ValueError: bad"


def test_format_exception_survives_cycles() -> None:
    first = RuntimeError("first")
    second = RuntimeError("second")
    first.__cause__ = second
    second.__cause__ = first

    assert format_exception(first) == "RuntimeError: first | Inner RuntimeError: second"
