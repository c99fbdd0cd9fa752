from __future__ import annotations

import json

import pytest

from daqifi_cli.formatting import (
    CSV_HEADER,
    OutputFormat,
    format_status_summary,
    render,
    to_csv_line,
    to_json_line,
    to_text_line,
)
from daqifi_cli.messages import DecodedMessage

FLOAT_SAMPLE = DecodedMessage(timestamp=42, analog_float=(1.0, 2.5))


def test_float_sample_in_every_format() -> None:
    assert to_text_line(FLOAT_SAMPLE) == "ts=42 analog=[1.000, 2.500]"
    assert to_csv_line(FLOAT_SAMPLE) == "42,1.000000,2.500000,"
    assert to_json_line(FLOAT_SAMPLE) == '{"ts":42,"analog":[1.000000,2.500000],"digital":""}'


def test_integer_values_are_plain() -> None:
    message = DecodedMessage(timestamp=7, analog_int=(-3, 0, 4095))

    assert to_text_line(message) == "ts=7 analog=[-3, 0, 4095]"
    assert to_csv_line(message) == "7,-3,0,4095,"
    assert json.loads(to_json_line(message)) == {"ts": 7, "analog": [-3, 0, 4095], "digital": ""}


def test_floats_take_precedence_over_integers() -> None:
    message = DecodedMessage(analog_int=(1, 2), analog_float=(0.5,))

    assert to_text_line(message) == "analog=[0.500]"
    assert to_csv_line(message) == "0,0.500000,"


def test_text_truncates_after_eight_values() -> None:
    message = DecodedMessage(timestamp=1, analog_int=tuple(range(10)))

    assert to_text_line(message) == "ts=1 analog=[0, 1, 2, 3, 4, 5, 6, 7, ...]"


def test_text_shows_exactly_eight_values_without_marker() -> None:
    message = DecodedMessage(analog_int=tuple(range(8)))

    assert to_text_line(message) == "analog=[0, 1, 2, 3, 4, 5, 6, 7]"


def test_csv_and_jsonl_keep_every_value() -> None:
    message = DecodedMessage(timestamp=1, analog_int=tuple(range(10)))

    assert to_csv_line(message) == "1,0,1,2,3,4,5,6,7,8,9,"
    assert json.loads(to_json_line(message))["analog"] == list(range(10))


def test_digital_hex_per_format() -> None:
    message = DecodedMessage(timestamp=3, analog_int=(1,), digital=b"\x0f\xa0")

    assert to_text_line(message) == "ts=3 analog=[1] digital=0F-A0"
    assert to_csv_line(message) == "3,1,0FA0"
    assert json.loads(to_json_line(message))["digital"] == "0F-A0"


@pytest.mark.parametrize(
    "message, expected",
    [
        (DecodedMessage(digital=b"\x01"), "digital=01"),
        (DecodedMessage(timestamp=5, digital=b"\xff"), "ts=5 digital=FF"),
        (DecodedMessage(analog_float=(3.14159,)), "analog=[3.142]"),
        (DecodedMessage(), ""),
    ],
)
def test_text_omits_absent_sections(message: DecodedMessage, expected: str) -> None:
    assert to_text_line(message) == expected


def test_csv_timestamp_zero_is_written() -> None:
    assert to_csv_line(DecodedMessage(digital=b"\x01")) == "0,,01"


def test_render_dispatches_on_format() -> None:
    assert render(FLOAT_SAMPLE, OutputFormat.TEXT) == to_text_line(FLOAT_SAMPLE)
    assert render(FLOAT_SAMPLE, OutputFormat.CSV) == to_csv_line(FLOAT_SAMPLE)
    assert render(FLOAT_SAMPLE, OutputFormat.JSONL) == to_json_line(FLOAT_SAMPLE)


def test_only_csv_has_a_header() -> None:
    assert OutputFormat.CSV.header == CSV_HEADER
    assert OutputFormat.TEXT.header is None
    assert OutputFormat.JSONL.header is None


def test_status_summary() -> None:
    message = DecodedMessage(
        analog_port_count=16, digital_port_count=2, firmware_revision="3.4.1", serial_number=99
    )
    assert format_status_summary(message) == "Status: analogIn=16 digital=2 fw=3.4.1 sn=99"


def test_status_summary_without_firmware() -> None:
    assert format_status_summary(DecodedMessage(serial_number=1)) == (
        "Status: analogIn=0 digital=0 fw=unknown sn=1"
    )


def test_non_finite_floats_are_null_in_jsonl() -> None:
    message = DecodedMessage(
        timestamp=2, analog_float=(float("nan"), 1.5, float("inf"), float("-inf"))
    )

    line = to_json_line(message)

    assert line == '{"ts":2,"analog":[null,1.500000,null,null],"digital":""}'
    assert json.loads(line)["analog"] == [None, 1.5, None, None]
