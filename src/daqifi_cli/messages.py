"""Decoded device messages.

Every frame received from the device is decoded into a :class:`DecodedMessage`
by the codec and handed to the session, which classifies it before anything
is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DecodedMessage:
    """One telemetry frame as produced by the codec.

    Attributes:
        timestamp: Device timestamp. 0 means the frame carried none.
        analog_int: Raw integer ADC readings, in channel order.
        analog_float: Scaled floating-point readings. When present they take
            precedence over ``analog_int``; the two are never mixed on output.
        digital: Digital port bitfield, possibly empty.
        analog_port_count: Number of analog inputs reported by the device.
        digital_port_count: Number of digital ports reported by the device.
        firmware_revision: Firmware revision string, if reported.
        serial_number: Device serial number, 0 when absent.

    Note:
        Instances are consumed synchronously by the session and not retained.
        Several subscribers may see the same instance, hence frozen.
    """

    timestamp: int = 0
    analog_int: tuple[int, ...] = ()
    analog_float: tuple[float, ...] = ()
    digital: bytes = b""
    analog_port_count: int = 0
    digital_port_count: int = 0
    firmware_revision: Optional[str] = None
    serial_number: int = 0

    @property
    def has_samples(self) -> bool:
        return bool(self.analog_int or self.analog_float or self.digital)

    @property
    def has_device_info(self) -> bool:
        return bool(
            self.analog_port_count
            or self.digital_port_count
            or self.firmware_revision
            or self.serial_number
        )
