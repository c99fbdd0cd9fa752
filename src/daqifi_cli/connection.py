"""Device connections over TCP, serial, or a simulated device.

A connection owns the byte transport and its read loop. Decoded messages and
status transitions are pushed to subscribed handlers from whatever context
the read loop runs in:

- :class:`TcpConnection` reads in an asyncio task on the event loop.
- :class:`SerialConnection` reads in a daemon thread, so its handlers run
  outside the event loop, concurrently with the session.
- :class:`MockConnection` generates frames in an asyncio task once it is
  told to start streaming.

Handlers must therefore be thread-safe. Exceptions they raise are logged and
never reach the read loop.

Requirements:
- pyserial: serial port access (``serial_for_url`` also accepts ``loop://``)
- asyncio: TCP streams, executor offload for blocking serial calls
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

import serial

from .codec import (
    DEFAULT_TCP_PORT,
    ENABLE_ADC_CHANNELS_COMMAND,
    START_STREAMING_COMMAND,
    STOP_STREAMING,
    FrameDecoder,
    encode_command,
    encode_frame,
)
from .errors import ConnectError, TransportError
from .messages import DecodedMessage

logger = logging.getLogger(__name__)


DEFAULT_BAUD_RATE = 115200
DEFAULT_MOCK_CHANNELS = 8


class ConnectionStatus(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    LOST = "Lost"


MessageHandler = Callable[[DecodedMessage], None]
StatusHandler = Callable[[ConnectionStatus], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Connect retry settings.

    Attributes:
        max_attempts: Total attempts, at least one is always made.
        timeout: Seconds allowed per attempt. 0 or less waits indefinitely.
        delay: Pause in seconds between failed attempts.
    """

    max_attempts: int = 1
    timeout: float = 5.0
    delay: float = 1.0


class DeviceConnection(ABC):
    """Abstract base class for a live link to a device.

    Subclasses implement the transport (:meth:`open`, :meth:`send`,
    :meth:`disconnect`) and report through :meth:`_set_status` and
    :meth:`_dispatch`. Subscriptions are plain callables, registered before
    streaming starts and kept for the lifetime of the connection.
    """

    def __init__(self) -> None:
        self._message_handlers: list[MessageHandler] = []
        self._status_handlers: list[StatusHandler] = []
        self._handler_lock = threading.Lock()
        self._status = ConnectionStatus.DISCONNECTED
        self._last_error: Optional[BaseException] = None

    def on_message(self, handler: MessageHandler) -> None:
        with self._handler_lock:
            self._message_handlers.append(handler)

    def on_status(self, handler: StatusHandler) -> None:
        with self._handler_lock:
            self._status_handlers.append(handler)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def last_error(self) -> Optional[BaseException]:
        """Cause of the most recent ``LOST`` transition, if any."""
        return self._last_error

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable endpoint, e.g. ``192.168.1.10:9760``."""

    @abstractmethod
    async def open(self) -> None:
        """Establish the link and start the read loop.

        Raises:
            OSError: If the transport cannot be opened.
        """

    @abstractmethod
    async def send(self, command: str) -> None:
        """Send one SCPI command line.

        Raises:
            TransportError: If the link is down or the write fails.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop the read loop and release the transport."""

    def _set_status(
        self, status: ConnectionStatus, error: Optional[BaseException] = None
    ) -> None:
        if error is not None:
            self._last_error = error
        if status is self._status:
            return
        self._status = status
        logger.debug("%s status: %s", self.description, status.value)

        with self._handler_lock:
            handlers = list(self._status_handlers)
        for handler in handlers:
            try:
                handler(status)
            except Exception:
                logger.exception("Status handler failed")

    def _dispatch(self, message: DecodedMessage) -> None:
        with self._handler_lock:
            handlers = list(self._message_handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception("Message handler failed")

    def _require_connected(self) -> None:
        if self._status is not ConnectionStatus.CONNECTED:
            raise TransportError(
                f"Not connected to {self.description} (status: {self._status.value})"
            )


class TcpConnection(DeviceConnection):
    """Device link over TCP (WiFi or Ethernet)."""

    def __init__(self, host: str, port: int = DEFAULT_TCP_PORT, read_size: int = 4096):
        super().__init__()
        self._host = host
        self._port = port
        self._read_size = read_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task[None]] = None
        self._decoder = FrameDecoder()

    @property
    def description(self) -> str:
        return f"{self._host}:{self._port}"

    async def open(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            reader, writer = await asyncio.open_connection(self._host, self._port)
        except BaseException:
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise

        self._reader, self._writer = reader, writer
        self._set_status(ConnectionStatus.CONNECTED)
        self._read_task = asyncio.get_running_loop().create_task(
            self._read_loop(reader), name=f"tcp-reader[{self.description}]"
        )

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(self._read_size)
                if not data:
                    raise ConnectionError("Connection closed by device")
                for message in self._decoder.feed(data):
                    self._dispatch(message)
        except OSError as e:
            logger.warning("TCP read loop ended for %s: %s", self.description, e)
            self._set_status(ConnectionStatus.LOST, e)

    async def send(self, command: str) -> None:
        self._require_connected()
        writer = self._writer
        if writer is None:
            raise TransportError(f"Not connected to {self.description}")
        logger.debug("Sending to %s: %s", self.description, command)
        try:
            writer.write(encode_command(command))
            await writer.drain()
        except OSError as e:
            raise TransportError(f"Failed to send '{command}' to {self.description}") from e

    async def disconnect(self) -> None:
        task, self._read_task = self._read_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        writer, self._writer = self._writer, None
        self._reader = None
        try:
            if writer is not None:
                writer.close()
                await writer.wait_closed()
        except OSError as e:
            # Peer already gone; the socket is released either way
            logger.debug("Closing %s: %s", self.description, e)
        finally:
            self._set_status(ConnectionStatus.DISCONNECTED)


class SerialConnection(DeviceConnection):
    """Device link over a serial (USB CDC) port.

    pyserial is blocking, so the port is read by a daemon thread and writes
    are pushed to the default executor. Message and status handlers are
    invoked from the reader thread.
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        read_timeout: float = 0.1,
        join_timeout: float = 2.0,
    ):
        super().__init__()
        self._port = port
        self._baud_rate = baud_rate
        self._read_timeout = read_timeout
        self._join_timeout = join_timeout
        self._serial: Optional[serial.SerialBase] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._decoder = FrameDecoder()

    @property
    def description(self) -> str:
        return f"{self._port} @ {self._baud_rate} baud"

    async def open(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        loop = asyncio.get_running_loop()
        try:
            port = await loop.run_in_executor(
                None,
                functools.partial(
                    serial.serial_for_url,
                    self._port,
                    baudrate=self._baud_rate,
                    timeout=self._read_timeout,
                ),
            )
        except BaseException:
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise

        self._serial = port
        self._stop_event.clear()
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(port,),
            name=f"SerialReader[{self._port}]",
            daemon=True,
        )
        self._set_status(ConnectionStatus.CONNECTED)
        self._reader_thread.start()

    def _read_loop(self, port: serial.SerialBase) -> None:
        logger.debug("Serial reader thread started: %s", self.description)
        try:
            while not self._stop_event.is_set():
                data = port.read(port.in_waiting or 1)
                if not data:
                    continue
                for message in self._decoder.feed(data):
                    self._dispatch(message)
        except serial.SerialException as e:
            if not self._stop_event.is_set():
                logger.warning("Serial read failed on %s: %s", self.description, e)
                self._set_status(ConnectionStatus.LOST, e)
        finally:
            logger.debug("Serial reader thread finished: %s", self.description)

    def _write(self, data: bytes) -> None:
        port = self._serial
        if port is None:
            raise serial.SerialException(f"Port {self._port} is not open")
        port.write(data)
        port.flush()

    async def send(self, command: str) -> None:
        self._require_connected()
        logger.debug("Sending to %s: %s", self.description, command)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write, encode_command(command))
        except serial.SerialException as e:
            raise TransportError(f"Failed to send '{command}' to {self.description}") from e

    async def disconnect(self) -> None:
        self._stop_event.set()
        loop = asyncio.get_running_loop()

        thread, self._reader_thread = self._reader_thread, None
        if thread is not None:
            await loop.run_in_executor(None, thread.join, self._join_timeout)
            if thread.is_alive():
                logger.warning("Serial reader thread did not stop within %.1fs", self._join_timeout)

        port, self._serial = self._serial, None
        try:
            if port is not None:
                await loop.run_in_executor(None, port.close)
        finally:
            self._set_status(ConnectionStatus.DISCONNECTED)


class MockConnection(DeviceConnection):
    """Simulated device for testing and demonstration without hardware.

    The mock answers the same SCPI commands as a real device. After the start
    command it emits one status frame, then stream frames at the requested
    rate: one float reading per enabled channel (a sine wave per channel with
    a little Gaussian noise) and a one-byte digital counter. Frames go through
    the real codec, so what the session sees matches a device byte for byte.
    """

    def __init__(
        self,
        channels: int = DEFAULT_MOCK_CHANNELS,
        serial_number: int = 0x0DA0F1F1,
        firmware_revision: str = "mock-1.0",
    ):
        super().__init__()
        self._channels = channels
        self._enabled = [True] * channels
        self._serial_number = serial_number
        self._firmware_revision = firmware_revision
        self._stream_task: Optional[asyncio.Task[None]] = None
        self._decoder = FrameDecoder()

    @property
    def description(self) -> str:
        return "mock device"

    async def open(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        await asyncio.sleep(0)
        self._set_status(ConnectionStatus.CONNECTED)

    async def send(self, command: str) -> None:
        self._require_connected()
        logger.debug("Mock device received: %s", command)
        name, _, argument = command.partition(" ")

        if name == ENABLE_ADC_CHANNELS_COMMAND:
            mask = argument.strip()[: self._channels]
            self._enabled = [bit == "1" for bit in mask.ljust(self._channels, "0")]
        elif name == START_STREAMING_COMMAND:
            rate = int(argument) if argument.strip() else 100
            await self._stop_stream()
            self._stream_task = asyncio.get_running_loop().create_task(
                self._generate(1.0 / max(rate, 1)), name="mock-stream"
            )
        elif name == STOP_STREAMING:
            await self._stop_stream()
        else:
            logger.warning("Mock device ignoring unknown command: %s", command)

    async def disconnect(self) -> None:
        await self._stop_stream()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _stop_stream(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _emit(self, message: DecodedMessage) -> None:
        for decoded in self._decoder.feed(encode_frame(message)):
            self._dispatch(decoded)

    async def _generate(self, interval: float) -> None:
        self._emit(
            DecodedMessage(
                analog_port_count=self._channels,
                digital_port_count=1,
                firmware_revision=self._firmware_revision,
                serial_number=self._serial_number,
            )
        )

        start_time = time.time()
        counter = 0
        while True:
            elapsed = time.time() - start_time
            values = tuple(
                2.5
                + 2.0 * math.sin(2 * math.pi * (0.5 + 0.25 * channel) * elapsed)
                + random.gauss(0, 0.01)
                for channel, enabled in enumerate(self._enabled)
                if enabled
            )
            self._emit(
                DecodedMessage(
                    timestamp=int(elapsed * 1000),
                    analog_float=values,
                    digital=bytes([counter & 0xFF]),
                )
            )
            counter += 1
            await asyncio.sleep(interval)


@dataclass(frozen=True)
class NetworkTarget:
    host: str
    port: int = DEFAULT_TCP_PORT

    def describe(self) -> str:
        return f"{self.host}:{self.port}"

    def create_connection(self) -> DeviceConnection:
        return TcpConnection(self.host, self.port)


@dataclass(frozen=True)
class SerialTarget:
    port: str
    baud_rate: int = DEFAULT_BAUD_RATE

    def describe(self) -> str:
        return f"{self.port} @ {self.baud_rate} baud"

    def create_connection(self) -> DeviceConnection:
        return SerialConnection(self.port, self.baud_rate)


@dataclass(frozen=True)
class MockTarget:
    channels: int = DEFAULT_MOCK_CHANNELS

    def describe(self) -> str:
        return "mock device"

    def create_connection(self) -> DeviceConnection:
        return MockConnection(channels=self.channels)


Target = Union[NetworkTarget, SerialTarget, MockTarget]


async def connect(target: Target, retry: RetryPolicy = RetryPolicy()) -> DeviceConnection:
    """Open a connection to ``target``, retrying per ``retry``.

    Each attempt gets a fresh connection object and its own timeout. A
    connection is only returned once it reports ``CONNECTED``.

    Args:
        target: Network, serial or mock endpoint.
        retry: Attempt count, per-attempt timeout and delay between attempts.

    Returns:
        An open connection. The caller owns it and must disconnect it.

    Raises:
        ConnectError: If every attempt failed. The last failure is chained
            as the cause.
    """
    attempts = max(1, retry.max_attempts)
    timeout = retry.timeout if retry.timeout > 0 else None
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        logger.info(
            "Connecting to %s (attempt %d/%d)", target.describe(), attempt, attempts
        )
        connection = target.create_connection()
        try:
            await asyncio.wait_for(connection.open(), timeout=timeout)
            return connection
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            last_error = e
            logger.warning(
                "Connection attempt %d/%d to %s failed: %s",
                attempt,
                attempts,
                target.describe(),
                str(e) or type(e).__name__,
            )

        if attempt < attempts:
            await asyncio.sleep(retry.delay)

    raise ConnectError(
        f"Unable to connect to {target.describe()} after {attempts} attempt(s)"
    ) from last_error
