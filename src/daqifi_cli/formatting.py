"""Line rendering for stream samples and status summaries.

Three output formats are supported:

- ``text``: human-readable, ``ts=42 analog=[1.000, 2.500] digital=0F-A0``
- ``csv``: ``timestamp,analog_values,digital_hex`` rows
- ``jsonl``: one compact JSON object per line

Float readings win over integer readings when a frame carries both. Python
format specs never consult the locale, so the decimal point is always ``.``.
"""

from __future__ import annotations

import json
import math
from enum import Enum
from typing import Optional

from .messages import DecodedMessage

CSV_HEADER = "timestamp,analog_values,digital_hex"

# Analog values shown per text line before the list is elided
TEXT_ANALOG_PREVIEW = 8


class OutputFormat(str, Enum):
    TEXT = "text"
    CSV = "csv"
    JSONL = "jsonl"

    @property
    def header(self) -> Optional[str]:
        """Header line written before the first row, if the format has one."""
        return CSV_HEADER if self is OutputFormat.CSV else None


def _analog_values(message: DecodedMessage, decimals: int) -> list[str]:
    if message.analog_float:
        return [f"{value:.{decimals}f}" for value in message.analog_float]
    return [str(value) for value in message.analog_int]


def _json_values(message: DecodedMessage) -> list[str]:
    # JSON has no NaN or Infinity literals
    if message.analog_float:
        return [
            f"{value:.6f}" if math.isfinite(value) else "null"
            for value in message.analog_float
        ]
    return [str(value) for value in message.analog_int]


def _hex(data: bytes, separator: str = "") -> str:
    return separator.join(f"{byte:02X}" for byte in data)


def to_text_line(message: DecodedMessage) -> str:
    parts: list[str] = []
    if message.timestamp != 0:
        parts.append(f"ts={message.timestamp}")

    values = _analog_values(message, 3)
    if values:
        shown = ", ".join(values[:TEXT_ANALOG_PREVIEW])
        if len(values) > TEXT_ANALOG_PREVIEW:
            shown += ", ..."
        parts.append(f"analog=[{shown}]")

    if message.digital:
        parts.append(f"digital={_hex(message.digital, '-')}")

    return " ".join(parts)


def to_csv_line(message: DecodedMessage) -> str:
    analog = ",".join(_analog_values(message, 6))
    return f"{message.timestamp},{analog},{_hex(message.digital)}"


def to_json_line(message: DecodedMessage) -> str:
    # Built by hand: json.dumps would print 1.0 instead of 1.000000
    analog = ",".join(_json_values(message))
    digital = json.dumps(_hex(message.digital, "-"))
    return f'{{"ts":{message.timestamp},"analog":[{analog}],"digital":{digital}}}'


def render(message: DecodedMessage, output_format: OutputFormat) -> str:
    """Render a stream message as a single line (without newline)."""
    if output_format is OutputFormat.JSONL:
        return to_json_line(message)
    if output_format is OutputFormat.CSV:
        return to_csv_line(message)
    return to_text_line(message)


def format_status_summary(message: DecodedMessage) -> str:
    return (
        f"Status: analogIn={message.analog_port_count} "
        f"digital={message.digital_port_count} "
        f"fw={message.firmware_revision or 'unknown'} "
        f"sn={message.serial_number}"
    )
