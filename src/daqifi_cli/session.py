"""Streaming session controller.

A session connects to one device, configures it, streams until a stop
condition fires, stops the device and reports a deterministic outcome:

1. **Connect** with the configured retry policy (``CONNECT_ERROR`` on failure).
2. **Subscribe** to status and message events before any command is sent,
   since frames may arrive right after the start command.
3. **Arm the stop signal**: duration timer, operator interrupt (SIGINT) and
   message limit all feed the same one-shot :class:`StopSignal`.
4. **Configure and start**: optional channel mask, then start streaming.
5. **Wait** on the stop signal. This is the only suspension point.
6. **Stop** streaming exactly once, whichever trigger fired.
7. **Judge** the stream message count against the required minimum.
8. **Tear down**: disconnect unless asked to keep the link open. Teardown
   failures are logged and never change an outcome already computed.

Message and status events may be delivered from the event loop or from a
transport thread. A handler re-checks the stop signal, counts and writes under
one controller lock; the controller takes that lock once after the signal
fires, so the counting window closes before the stop command is sent.

Example:
    >>> config = SessionConfig(host="192.168.1.10", duration=5, output_format=OutputFormat.CSV)
    >>> exit_code = run(config)
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import signal
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TextIO

from .classifier import MessageKind, classify
from .codec import DEFAULT_TCP_PORT, STOP_STREAMING, enable_adc_channels, start_streaming
from .connection import (
    DEFAULT_BAUD_RATE,
    ConnectionStatus,
    DeviceConnection,
    MockTarget,
    NetworkTarget,
    RetryPolicy,
    SerialTarget,
    Target,
    connect,
)
from .errors import ConfigError, ConnectError, TransportError, format_exception
from .formatting import OutputFormat, format_status_summary, render
from .messages import DecodedMessage
from .output import OutputSink

logger = logging.getLogger(__name__)


DEFAULT_RATE = 100
DEFAULT_DURATION_SECONDS = 10.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
CONNECT_RETRY_DELAY_SECONDS = 1.0

CHANNEL_ENABLED = "1"
CHANNEL_DISABLED = "0"


class SessionOutcome(Enum):
    SUCCESS = "success"
    VALIDATION_FAILED = "validation failed"
    CONNECT_ERROR = "connect error"
    RUNTIME_ERROR = "runtime error"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    SessionOutcome.SUCCESS: 0,
    SessionOutcome.VALIDATION_FAILED: 2,
    SessionOutcome.CONNECT_ERROR: 1,
    SessionOutcome.RUNTIME_ERROR: 1,
}


@dataclass(frozen=True)
class SessionConfig:
    """Immutable parameters of one streaming session.

    Exactly one target must be given: ``host`` (network), ``serial_port``
    (serial) or ``mock``. :meth:`validate` enforces this before any connection
    attempt.

    Attributes:
        host: Device IP address for a TCP connection.
        port: Device TCP port.
        serial_port: Serial port name or pyserial URL.
        baud_rate: Serial baud rate.
        mock: Use the simulated device instead of hardware.
        sample_rate: Streaming rate in Hz sent with the start command.
        duration: Seconds to stream. 0 streams until another trigger fires.
        message_limit: Stop after this many stream messages. 0 disables.
        min_samples: Minimum stream messages for success. 0 disables.
        channel_mask: ADC enable mask, one ``0``/``1`` per channel.
        output_format: Rendering of stream messages.
        output_path: Output file, or None for stdout.
        connect_timeout: Seconds allowed per connect attempt.
        connect_attempts: Total connect attempts.
        keep_connected: Leave the link open after streaming stops.
        show_status: Write device status messages to the output.
    """

    host: Optional[str] = None
    port: int = DEFAULT_TCP_PORT
    serial_port: Optional[str] = None
    baud_rate: int = DEFAULT_BAUD_RATE
    mock: bool = False
    sample_rate: int = DEFAULT_RATE
    duration: float = DEFAULT_DURATION_SECONDS
    message_limit: int = 0
    min_samples: int = 0
    channel_mask: Optional[str] = None
    output_format: OutputFormat = OutputFormat.TEXT
    output_path: Optional[str] = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    connect_attempts: int = 1
    keep_connected: bool = False
    show_status: bool = False

    def validate(self) -> None:
        """Check the target invariant.

        Raises:
            ConnectError: If no target or more than one target is set, or the
                host is not an IP address.
        """
        host = (self.host or "").strip()
        has_serial = bool(self.serial_port and self.serial_port.strip())
        selected = sum((bool(host), has_serial, self.mock))

        if selected == 0:
            raise ConnectError("Missing required option: --ip or --serial")
        if host and has_serial:
            raise ConnectError("Cannot specify both --ip and --serial. Use one or the other.")
        if selected > 1:
            raise ConnectError("--mock cannot be combined with --ip or --serial")

        if host:
            try:
                ipaddress.ip_address(host)
            except ValueError as e:
                raise ConnectError(f"Invalid IP address: {host}") from e

    @property
    def target(self) -> Target:
        if self.mock:
            return MockTarget()
        if self.serial_port and self.serial_port.strip():
            return SerialTarget(self.serial_port.strip(), self.baud_rate)
        if self.host and self.host.strip():
            return NetworkTarget(self.host.strip(), self.port)
        raise ConnectError("Missing required option: --ip or --serial")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.connect_attempts),
            timeout=self.connect_timeout,
            delay=CONNECT_RETRY_DELAY_SECONDS,
        )


def is_valid_channel_mask(mask: str) -> bool:
    return all(bit in (CHANNEL_ENABLED, CHANNEL_DISABLED) for bit in mask)


class StopReason(Enum):
    DURATION = "duration"
    LIMIT = "message limit"
    INTERRUPT = "interrupt"
    FAULT = "transport fault"
    SHUTDOWN = "shutdown"


class StopSignal:
    """One-shot stop trigger shared by every termination source.

    :meth:`trigger` may be called from any thread, any number of times; only
    the first call wins and records its reason. The reason is informational:
    the session outcome depends only on the message count.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._lock = threading.Lock()
        self._event = asyncio.Event()
        self._reason: Optional[StopReason] = None

    def trigger(self, reason: StopReason) -> bool:
        """Fire the signal.

        Returns:
            True if this call fired it, False if it had already fired.
        """
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason

        logger.debug("Stop requested: %s", reason.value)
        if self._loop.is_closed():
            logger.debug("Event loop closed; stop signal not delivered")
        else:
            self._loop.call_soon_threadsafe(self._event.set)
        return True

    @property
    def is_set(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[StopReason]:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


Connector = Callable[[Target, RetryPolicy], Awaitable[DeviceConnection]]


class SessionController:
    """Drive one device connection from connect to teardown.

    Args:
        config: Session parameters.
        connector: Coroutine function returning an open connection. Defaults
            to :func:`daqifi_cli.connection.connect`.
        stdout: Stream used when no output file is configured.
        handle_interrupts: Install a SIGINT handler that stops the session.
            Only effective on the main thread.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        connector: Connector = connect,
        stdout: Optional[TextIO] = None,
        handle_interrupts: bool = True,
    ) -> None:
        self._config = config
        self._connector = connector
        self._stdout = stdout
        self._handle_interrupts = handle_interrupts

        # Guards the stop re-check, the counter, sink writes and the fault
        self._lock = threading.Lock()
        self._received = 0
        self._fault: Optional[BaseException] = None
        self._stop: Optional[StopSignal] = None
        self._sink: Optional[OutputSink] = None
        self._connection: Optional[DeviceConnection] = None

    @property
    def received_count(self) -> int:
        """Stream messages accepted so far. Never exceeds a configured limit."""
        with self._lock:
            return self._received

    @property
    def stop_reason(self) -> Optional[StopReason]:
        return self._stop.reason if self._stop is not None else None

    async def run(self) -> SessionOutcome:
        config = self._config
        try:
            config.validate()
            connection = await self._connector(config.target, config.retry_policy)
        except ConnectError as e:
            logger.error("Error: %s", format_exception(e))
            return SessionOutcome.CONNECT_ERROR

        self._connection = connection
        loop = asyncio.get_running_loop()
        stop = self._stop = StopSignal(loop)
        timer: Optional[asyncio.TimerHandle] = None
        restore_interrupt: Optional[Callable[[], None]] = None

        try:
            self._sink = OutputSink.open(config.output_path, config.output_format, self._stdout)

            connection.on_status(self._handle_status)
            connection.on_message(self._handle_message)

            if config.duration > 0:
                timer = loop.call_later(config.duration, stop.trigger, StopReason.DURATION)
            if self._handle_interrupts:
                restore_interrupt = self._install_interrupt_handler(loop, stop)

            logger.info("Connected to %s", connection.description)

            if config.channel_mask:
                if not is_valid_channel_mask(config.channel_mask):
                    raise ConfigError(f"Invalid channel mask: {config.channel_mask}")
                await connection.send(enable_adc_channels(config.channel_mask))

            await connection.send(start_streaming(config.sample_rate))
            logger.info("Streaming at %d Hz...", config.sample_rate)

            await stop.wait()
            count, fault = self._close_window()

            if fault is not None:
                raise TransportError(
                    f"Streaming from {connection.description} failed"
                ) from fault

            await connection.send(STOP_STREAMING)
            logger.info("Streaming stopped (%s).", stop.reason.value if stop.reason else "unknown")

            if config.min_samples > 0 and count < config.min_samples:
                logger.warning(
                    "Validation failed: received %d sample(s), expected at least %d.",
                    count,
                    config.min_samples,
                )
                return SessionOutcome.VALIDATION_FAILED
            return SessionOutcome.SUCCESS

        except Exception as e:
            logger.error("Error: %s", format_exception(e))
            return SessionOutcome.RUNTIME_ERROR

        finally:
            # Late frames must not reach the sink once we stop listening
            stop.trigger(StopReason.SHUTDOWN)
            self._close_window()
            if timer is not None:
                timer.cancel()
            if restore_interrupt is not None:
                restore_interrupt()
            await self._teardown(connection)

    def _close_window(self) -> tuple[int, Optional[BaseException]]:
        """Wait out any handler mid-write; return the final count and fault.

        Must be called after the stop signal fired. Handlers that take the
        lock afterwards see it set and drop their message, so nothing is
        counted or written past this point.
        """
        with self._lock:
            return self._received, self._fault

    async def _teardown(self, connection: DeviceConnection) -> None:
        try:
            if self._config.keep_connected:
                logger.info("Keeping connection to %s open", connection.description)
            else:
                await connection.disconnect()
        except Exception as e:
            logger.error("Disconnect error: %s", format_exception(e))
        finally:
            if self._sink is not None:
                try:
                    self._sink.close()
                    logger.debug("Output closed after %d line(s)", self._sink.lines_written)
                except OSError as e:
                    logger.error("Output close error: %s", format_exception(e))

    def _handle_status(self, status: ConnectionStatus) -> None:
        logger.info("Status: %s", status.value)
        if status is ConnectionStatus.LOST:
            connection = self._connection
            error = connection.last_error if connection is not None else None
            self._record_fault(error or ConnectionError("Connection lost"))

    def _handle_message(self, message: DecodedMessage) -> None:
        stop = self._stop
        sink = self._sink
        if stop is None or sink is None or stop.is_set:
            return

        config = self._config
        kind = classify(message, include_status=config.show_status)
        if kind is MessageKind.OTHER:
            return

        try:
            with self._lock:
                # Stop may have fired while this message was classified
                if stop.is_set:
                    return

                if kind is MessageKind.STREAM:
                    self._received += 1
                    sink.write_line(render(message, config.output_format))
                    # Limit is inclusive: the Nth message is written, then we stop
                    limit = config.message_limit
                    if limit > 0 and self._received >= limit:
                        stop.trigger(StopReason.LIMIT)
                else:
                    sink.write_line(format_status_summary(message))

        except OSError as e:
            self._record_fault(e)

    def _record_fault(self, error: BaseException) -> None:
        with self._lock:
            if self._fault is None:
                self._fault = error
        if self._stop is not None:
            self._stop.trigger(StopReason.FAULT)

    @staticmethod
    def _install_interrupt_handler(
        loop: asyncio.AbstractEventLoop, stop: StopSignal
    ) -> Optional[Callable[[], None]]:
        """Route SIGINT into the stop signal; return a callable restoring it."""
        if threading.current_thread() is not threading.main_thread():
            return None

        def on_interrupt() -> None:
            if stop.trigger(StopReason.INTERRUPT):
                logger.info("Interrupt received, stopping...")

        try:
            loop.add_signal_handler(signal.SIGINT, on_interrupt)
            return lambda: loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            # Windows event loops: fall back to a plain signal handler
            previous = signal.getsignal(signal.SIGINT)
            signal.signal(signal.SIGINT, lambda signum, frame: on_interrupt())
            return lambda: signal.signal(signal.SIGINT, previous)


def run(config: SessionConfig) -> int:
    """Synchronous CLI wrapper: run a session and return its exit code.

    Returns:
        int: 0 on success, 2 when fewer than ``min_samples`` stream messages
        arrived, 1 on connect or runtime errors, 130 if an interrupt escaped
        the session's own handler.
    """
    try:
        outcome = asyncio.run(SessionController(config).run())
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    logger.debug("Session outcome: %s", outcome.value)
    return outcome.exit_code
