"""Device wire codec: telemetry frames, SCPI commands and discovery replies.

The device streams protobuf ``DaqifiOutMessage`` records over TCP or serial,
each one prefixed with its length as a base-128 varint. Commands travel the
other way as plain SCPI text lines.

Only the subset of the device schema this tool reads is declared here. The
message class is built at import time from a ``FileDescriptorProto`` so the
package does not depend on a generated ``_pb2`` module.

Wire format:
    <varint length><DaqifiOutMessage bytes><varint length><...>

Note:
    Frames can be split across reads, or several can arrive in one read.
    :class:`FrameDecoder` keeps the partial tail between calls to
    :meth:`FrameDecoder.feed`.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from .messages import DecodedMessage

logger = logging.getLogger(__name__)


DEFAULT_TCP_PORT = 9760
DISCOVERY_PORT = 30303
DISCOVERY_QUERY = b"DAQiFi?\r\n"

# Largest frame accepted before the receive buffer is considered corrupt
MAX_FRAME_SIZE = 64 * 1024

START_STREAMING_COMMAND = "SYSTem:StartStreamData"
STOP_STREAMING = "SYSTem:StopStreamData"
ENABLE_ADC_CHANNELS_COMMAND = "ENAble:VOLTage:DC"


_Field = descriptor_pb2.FieldDescriptorProto

# (name, number, type, repeated)
_OUT_MESSAGE_FIELDS = (
    ("msg_time_stamp", 1, _Field.TYPE_UINT32, False),
    ("analog_in_data", 2, _Field.TYPE_SINT32, True),
    ("analog_in_data_float", 3, _Field.TYPE_FLOAT, True),
    ("digital_data", 5, _Field.TYPE_BYTES, False),
    ("analog_in_port_num", 20, _Field.TYPE_UINT32, False),
    ("digital_port_num", 21, _Field.TYPE_UINT32, False),
    ("host_name", 30, _Field.TYPE_STRING, False),
    ("ip_addr", 31, _Field.TYPE_BYTES, False),
    ("device_port", 32, _Field.TYPE_UINT32, False),
    ("device_fw_rev", 40, _Field.TYPE_STRING, False),
    ("device_sn", 41, _Field.TYPE_UINT64, False),
)


def _build_out_message_class() -> type:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="daqifi_out_message.proto", package="daqifi", syntax="proto2"
    )
    message_proto = file_proto.message_type.add(name="DaqifiOutMessage")
    for name, number, field_type, repeated in _OUT_MESSAGE_FIELDS:
        field = message_proto.field.add(
            name=name,
            number=number,
            type=field_type,
            label=_Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL,
        )
        if repeated:
            field.options.packed = True

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(
        pool.FindMessageTypeByName("daqifi.DaqifiOutMessage")
    )


DaqifiOutMessage = _build_out_message_class()


class ProtocolMessageType(Enum):
    STREAM = "stream"
    STATUS = "status"
    UNKNOWN = "unknown"


def detect_message_type(message: DecodedMessage) -> ProtocolMessageType:
    """Tag a decoded message the way the device protocol does.

    Sample-carrying frames are stream frames; frames that only describe the
    device (port counts, firmware, serial number) are status frames.
    """
    if message.has_samples:
        return ProtocolMessageType.STREAM
    if message.has_device_info:
        return ProtocolMessageType.STATUS
    return ProtocolMessageType.UNKNOWN


def decode_message(payload: bytes) -> DecodedMessage:
    """Decode one protobuf payload (without its length prefix).

    Raises:
        google.protobuf.message.DecodeError: If the payload is not a valid
            ``DaqifiOutMessage``.
    """
    raw = DaqifiOutMessage()
    raw.ParseFromString(payload)
    firmware = _text(raw.device_fw_rev) if raw.HasField("device_fw_rev") else None
    return DecodedMessage(
        timestamp=raw.msg_time_stamp,
        analog_int=tuple(raw.analog_in_data),
        analog_float=tuple(raw.analog_in_data_float),
        digital=bytes(raw.digital_data),
        analog_port_count=raw.analog_in_port_num,
        digital_port_count=raw.digital_port_num,
        firmware_revision=firmware,
        serial_number=raw.device_sn,
    )


def _text(value: Union[str, bytes]) -> str:
    # proto2 strings are not UTF-8 checked; invalid ones come back as bytes
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def encode_message(message: DecodedMessage) -> bytes:
    raw = DaqifiOutMessage()
    if message.timestamp:
        raw.msg_time_stamp = message.timestamp
    raw.analog_in_data.extend(message.analog_int)
    raw.analog_in_data_float.extend(message.analog_float)
    if message.digital:
        raw.digital_data = message.digital
    if message.analog_port_count:
        raw.analog_in_port_num = message.analog_port_count
    if message.digital_port_count:
        raw.digital_port_num = message.digital_port_count
    if message.firmware_revision is not None:
        raw.device_fw_rev = message.firmware_revision
    if message.serial_number:
        raw.device_sn = message.serial_number
    return raw.SerializeToString()


def encode_frame(message: DecodedMessage) -> bytes:
    """Encode a message with its varint length prefix, as the device sends it."""
    payload = encode_message(message)
    return _encode_varint(len(payload)) + payload


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_varint(buffer: bytes) -> Optional[tuple[int, int]]:
    """Read a varint from the start of ``buffer``.

    Returns:
        ``(value, bytes consumed)``, or None if the varint is not complete yet.

    Raises:
        ValueError: If the prefix runs past 10 bytes (not a valid varint).
    """
    result = 0
    shift = 0
    for index, byte in enumerate(buffer):
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, index + 1
        shift += 7
        if shift >= 70:
            raise ValueError("Malformed varint length prefix")
    return None


class FrameDecoder:
    """Reassemble length-delimited telemetry frames from a byte stream.

    One decoder belongs to one connection and is fed from its read loop only,
    so it holds no lock.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self._buffer = bytearray()
        self._max_frame_size = max_frame_size
        self.frames_dropped = 0

    def feed(self, data: bytes) -> list[DecodedMessage]:
        """Append received bytes and return every message completed by them."""
        self._buffer.extend(data)
        messages: list[DecodedMessage] = []

        while self._buffer:
            try:
                header = _read_varint(self._buffer)
            except ValueError:
                logger.warning(
                    "Malformed length prefix: discarding %d buffered bytes",
                    len(self._buffer),
                )
                self._discard()
                break
            if header is None:
                break

            length, consumed = header
            if length > self._max_frame_size:
                logger.warning(
                    "Frame length %d exceeds %d bytes: discarding %d buffered bytes",
                    length,
                    self._max_frame_size,
                    len(self._buffer),
                )
                self._discard()
                break

            end = consumed + length
            if len(self._buffer) < end:
                logger.debug(
                    "Frame incomplete: %d of %d bytes", len(self._buffer) - consumed, length
                )
                break

            payload = bytes(self._buffer[consumed:end])
            del self._buffer[:end]
            try:
                messages.append(decode_message(payload))
            except DecodeError as e:
                self.frames_dropped += 1
                logger.warning("Frame decode failed (%d bytes): %s", length, e)

        return messages

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a complete frame."""
        return len(self._buffer)

    def _discard(self) -> None:
        self._buffer.clear()
        self.frames_dropped += 1


def start_streaming(rate: int) -> str:
    return f"{START_STREAMING_COMMAND} {rate}"


def enable_adc_channels(mask: str) -> str:
    return f"{ENABLE_ADC_CHANNELS_COMMAND} {mask}"


def encode_command(command: str) -> bytes:
    """Encode an SCPI command line for the device (ASCII, CRLF terminated)."""
    return f"{command}\r\n".encode("ascii")


@dataclass(frozen=True)
class DiscoveredDevice:
    name: str
    address: str
    port: int
    serial_number: int


def decode_discovery_reply(payload: bytes, source_address: str) -> DiscoveredDevice:
    """Decode a UDP discovery reply into a device endpoint.

    Replies may or may not carry a length prefix; a prefix is only stripped
    when it accounts for the whole datagram. The advertised IP address wins
    over the datagram source, which can be a NAT or relay address.

    Raises:
        google.protobuf.message.DecodeError: If the reply is not a
            ``DaqifiOutMessage``.
    """
    try:
        header = _read_varint(payload)
    except ValueError:
        header = None
    if header is not None and header[0] + header[1] == len(payload):
        payload = payload[header[1] :]

    raw = DaqifiOutMessage()
    raw.ParseFromString(payload)

    address = source_address
    if len(raw.ip_addr) == 4:
        address = str(ipaddress.IPv4Address(bytes(raw.ip_addr)))

    return DiscoveredDevice(
        name=_text(raw.host_name) or "DAQiFi",
        address=address,
        port=raw.device_port or DEFAULT_TCP_PORT,
        serial_number=raw.device_sn,
    )
