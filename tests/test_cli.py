from __future__ import annotations

import logging

import pytest

import daqifi_cli
from daqifi_cli import build_config, build_parser, main
from daqifi_cli.formatting import CSV_HEADER, OutputFormat


@pytest.fixture(autouse=True)
def _restore_logging():
    # main() reconfigures the root logger
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


def test_defaults() -> None:
    config = build_config(build_parser().parse_args(["--ip", "192.168.1.10"]))

    assert config.host == "192.168.1.10"
    assert config.port == 9760
    assert config.baud_rate == 115200
    assert config.sample_rate == 100
    assert config.duration == 10
    assert config.message_limit == 0
    assert config.min_samples == 0
    assert config.output_format is OutputFormat.TEXT
    assert config.connect_attempts == 1
    assert config.connect_timeout == 5
    assert not config.keep_connected
    assert not config.show_status


def test_format_is_case_insensitive() -> None:
    args = build_parser().parse_args(["--mock", "--format", "JSONL"])

    assert build_config(args).output_format is OutputFormat.JSONL


@pytest.mark.parametrize(
    "argv",
    [
        ["--ip", "10.0.0.1", "--limit", "many"],
        ["--ip", "10.0.0.1", "--format", "xml"],
        ["--no-such-flag"],
    ],
)
def test_parse_errors_exit_1(argv: list[str]) -> None:
    assert _exit_code(argv) == 1


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["--ip", "10.0.0.1", "--serial", "COM3"],
        ["--ip", "not-an-address"],
        ["--mock", "--serial", "COM3"],
    ],
)
def test_invalid_targets_exit_1(argv: list[str]) -> None:
    assert _exit_code(argv) == 1


def test_mock_session_writes_csv(tmp_path) -> None:
    path = tmp_path / "samples.csv"

    code = _exit_code(
        ["--mock", "--rate", "200", "--limit", "5", "--duration", "5",
         "--format", "csv", "--output", str(path)]
    )

    lines = path.read_text(encoding="utf-8").splitlines()
    assert code == 0
    assert lines[0] == CSV_HEADER
    assert len(lines) == 6
    assert all(line.count(",") == 9 for line in lines[1:])


def test_mock_session_below_minimum_exits_2(capsys) -> None:
    code = _exit_code(["--mock", "--rate", "200", "--limit", "3", "--min-samples", "10"])

    assert code == 2
    assert len(capsys.readouterr().out.splitlines()) == 3


def test_mock_session_with_invalid_mask_exits_1(capsys) -> None:
    assert _exit_code(["--mock", "--channels", "12"]) == 1
    assert capsys.readouterr().out == ""


def test_discover_serial_only(monkeypatch, capsys) -> None:
    monkeypatch.setattr(daqifi_cli, "list_serial_ports", lambda: [])

    assert _exit_code(["--discover-serial"]) == 0
    assert capsys.readouterr().out == "Available serial ports:\n  (none found)\n"


def test_discover_network(monkeypatch, capsys) -> None:
    from daqifi_cli.codec import DiscoveredDevice

    async def fake_discover(timeout: float):
        return [DiscoveredDevice("Nyquist1", "192.168.1.50", 9760, 77)]

    monkeypatch.setattr(daqifi_cli, "discover_network_devices", fake_discover)

    assert _exit_code(["-d", "--discover-timeout", "1"]) == 0
    assert capsys.readouterr().out == (
        "Discovered WiFi devices:\n  - Nyquist1 (192.168.1.50:9760) SN:77\n"
    )
