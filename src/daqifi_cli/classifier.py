"""Stream/status classification of decoded messages."""

from __future__ import annotations

from enum import Enum

from .codec import ProtocolMessageType, detect_message_type
from .messages import DecodedMessage


class MessageKind(Enum):
    STREAM = "stream"
    STATUS = "status"
    OTHER = "other"


def classify(message: DecodedMessage, include_status: bool = False) -> MessageKind:
    """Label a decoded message for routing.

    The sample check runs first, so a frame that carries samples and device
    metadata at the same time is always a stream message.

    Args:
        message: Frame to inspect.
        include_status: Whether the caller displays status messages. When
            False, status frames are reported as ``OTHER`` and dropped.

    Returns:
        ``STREAM`` for frames with analog or digital samples, ``STATUS`` for
        status-tagged frames when requested, ``OTHER`` otherwise.
    """
    if message.has_samples:
        return MessageKind.STREAM
    if include_status and detect_message_type(message) is ProtocolMessageType.STATUS:
        return MessageKind.STATUS
    return MessageKind.OTHER
