from __future__ import annotations

import pytest
from google.protobuf.message import DecodeError

from daqifi_cli.codec import (
    DEFAULT_TCP_PORT,
    DaqifiOutMessage,
    FrameDecoder,
    decode_discovery_reply,
    decode_message,
    enable_adc_channels,
    encode_command,
    encode_frame,
    encode_message,
    start_streaming,
)
from daqifi_cli.formatting import format_status_summary
from daqifi_cli.messages import DecodedMessage

SAMPLE = DecodedMessage(
    timestamp=1234, analog_int=(-5, 0, 70000), analog_float=(1.5, -2.25), digital=b"\x0f\xa0"
)
STATUS = DecodedMessage(
    analog_port_count=16, digital_port_count=1, firmware_revision="3.2.0", serial_number=2**40
)


@pytest.mark.parametrize("message", [SAMPLE, STATUS, DecodedMessage()])
def test_decode_reverses_encode(message: DecodedMessage) -> None:
    assert decode_message(encode_message(message)) == message


def test_frame_split_across_reads() -> None:
    decoder = FrameDecoder()
    frame = encode_frame(SAMPLE)

    messages = []
    for index in range(len(frame)):
        messages.extend(decoder.feed(frame[index : index + 1]))

    assert messages == [SAMPLE]
    assert decoder.pending == 0


def test_several_frames_in_one_read() -> None:
    decoder = FrameDecoder()
    data = encode_frame(SAMPLE) + encode_frame(STATUS) + encode_frame(SAMPLE)[:3]

    assert decoder.feed(data) == [SAMPLE, STATUS]
    assert decoder.pending == 3


def test_oversized_frame_is_discarded() -> None:
    decoder = FrameDecoder(max_frame_size=16)
    too_long = bytes([100]) + b"\x00" * 20

    assert decoder.feed(too_long) == []
    assert decoder.pending == 0
    assert decoder.frames_dropped == 1
    assert decoder.feed(encode_frame(DecodedMessage(timestamp=1))) == [DecodedMessage(timestamp=1)]


def test_malformed_prefix_is_discarded() -> None:
    decoder = FrameDecoder()

    assert decoder.feed(b"\xff" * 11) == []
    assert decoder.pending == 0
    assert decoder.frames_dropped == 1


def test_undecodable_frame_is_skipped() -> None:
    decoder = FrameDecoder()
    truncated_field = b"\x04" + b"\x2a\x05ab"

    assert decoder.feed(truncated_field + encode_frame(SAMPLE)) == [SAMPLE]
    assert decoder.frames_dropped == 1


def test_commands() -> None:
    assert start_streaming(100) == "SYSTem:StartStreamData 100"
    assert enable_adc_channels("1010") == "ENAble:VOLTage:DC 1010"
    assert encode_command("SYSTem:StopStreamData") == b"SYSTem:StopStreamData\r\n"


def _reply(**fields) -> bytes:
    return DaqifiOutMessage(**fields).SerializeToString()


def test_discovery_reply_uses_advertised_address() -> None:
    payload = _reply(
        host_name="Nyquist1", ip_addr=bytes([192, 168, 1, 50]), device_port=9761, device_sn=77
    )

    device = decode_discovery_reply(payload, "10.0.0.1")

    assert device.name == "Nyquist1"
    assert device.address == "192.168.1.50"
    assert device.port == 9761
    assert device.serial_number == 77


def test_discovery_reply_defaults_and_length_prefix() -> None:
    payload = _reply(device_sn=5)
    prefixed = bytes([len(payload)]) + payload

    device = decode_discovery_reply(prefixed, "10.0.0.1")

    assert device.name == "DAQiFi"
    assert device.address == "10.0.0.1"
    assert device.port == DEFAULT_TCP_PORT
    assert device.serial_number == 5


def test_discovery_reply_rejects_garbage() -> None:
    with pytest.raises(DecodeError):
        decode_discovery_reply(b"\x2a\x05ab", "10.0.0.1")


def test_invalid_utf8_firmware_is_replaced() -> None:
    # field 40 (device_fw_rev), length 2, bytes FF FE
    payload = b"\xc2\x02\x02\xff\xfe"

    (message,) = FrameDecoder().feed(bytes([len(payload)]) + payload)

    assert message.firmware_revision == "\ufffd\ufffd"
    assert format_status_summary(message) == "Status: analogIn=0 digital=0 fw=\ufffd\ufffd sn=0"
