from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import NoReturn, Optional, Sequence

from .codec import DEFAULT_TCP_PORT
from .connection import DEFAULT_BAUD_RATE
from .discovery import DEFAULT_DISCOVERY_TIMEOUT, discover_network_devices, list_serial_ports
from .errors import ConnectError, format_exception
from .formatting import OutputFormat
from .session import (
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_DURATION_SECONDS,
    DEFAULT_RATE,
    SessionConfig,
    SessionOutcome,
    run,
)

__all__ = ["SessionConfig", "SessionOutcome", "OutputFormat", "build_config", "main", "run"]

logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    # Exit status 2 is reserved for validation failures
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\nUse --help to see available options.\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="daqifi-cli",
        description="Stream samples from a DAQiFi device over TCP or serial and write them as text, CSV or JSON lines.",
    )

    connection = parser.add_argument_group("connection options")
    connection.add_argument("--ip", help="Device IP address (TCP/WiFi connection)")
    connection.add_argument(
        "--port", type=int, default=DEFAULT_TCP_PORT, help=f"TCP port (default: {DEFAULT_TCP_PORT})"
    )
    connection.add_argument(
        "--serial", help="Serial port name (e.g. COM3, /dev/ttyUSB0, /dev/cu.usbmodem101)"
    )
    connection.add_argument(
        "--baud",
        type=int,
        default=DEFAULT_BAUD_RATE,
        help=f"Baud rate for serial connection (default: {DEFAULT_BAUD_RATE})",
    )
    connection.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated device (no hardware required)",
    )

    discovery = parser.add_argument_group("discovery options")
    discovery.add_argument(
        "-d", "--discover", action="store_true", help="Discover WiFi devices over UDP"
    )
    discovery.add_argument(
        "--discover-serial", action="store_true", help="List available serial ports"
    )
    discovery.add_argument(
        "--discover-timeout",
        type=float,
        default=DEFAULT_DISCOVERY_TIMEOUT,
        help=f"WiFi discovery timeout in seconds (default: {DEFAULT_DISCOVERY_TIMEOUT:g})",
    )

    streaming = parser.add_argument_group("streaming options")
    streaming.add_argument(
        "--rate", type=int, default=DEFAULT_RATE, help=f"Streaming rate in Hz (default: {DEFAULT_RATE})"
    )
    streaming.add_argument(
        "--duration",
        type=float,
        default=DEFAULT_DURATION_SECONDS,
        help=f"Seconds to stream, 0 for no limit (default: {DEFAULT_DURATION_SECONDS:g})",
    )
    streaming.add_argument("--channels", help="Enable ADC channels with a 0/1 mask")
    streaming.add_argument(
        "--limit", type=int, default=0, help="Stop after N stream messages"
    )
    streaming.add_argument(
        "--min-samples",
        type=int,
        default=0,
        help="Require at least N stream messages (exit code 2 on failure)",
    )

    output = parser.add_argument_group("output options")
    output.add_argument(
        "--format",
        type=str.lower,
        default=OutputFormat.TEXT.value,
        choices=[f.value for f in OutputFormat],
        help="Output format for stream samples (default: text)",
    )
    output.add_argument("--output", help="Write samples to file instead of stdout")
    output.add_argument(
        "--show-status", action="store_true", help="Print device status messages when received"
    )

    advanced = parser.add_argument_group("advanced options")
    advanced.add_argument(
        "--connect-timeout",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT_SECONDS,
        help=f"Connect timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT_SECONDS:g})",
    )
    advanced.add_argument(
        "--connect-attempts", type=int, default=1, help="Total connect attempts (default: 1)"
    )
    advanced.add_argument(
        "--keep-connected",
        action="store_true",
        help="Keep connection open after streaming stops",
    )
    advanced.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Log level for diagnostics on stderr (default: INFO)",
    )
    advanced.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    return parser


def build_config(args: argparse.Namespace) -> SessionConfig:
    return SessionConfig(
        host=args.ip,
        port=args.port,
        serial_port=args.serial,
        baud_rate=args.baud,
        mock=args.mock,
        sample_rate=args.rate,
        duration=args.duration,
        message_limit=args.limit,
        min_samples=args.min_samples,
        channel_mask=args.channels,
        output_format=OutputFormat(args.format),
        output_path=args.output,
        connect_timeout=args.connect_timeout,
        connect_attempts=args.connect_attempts,
        keep_connected=args.keep_connected,
        show_status=args.show_status,
    )


def _configure_logging(level_name: str, log_file: Optional[str]) -> None:
    # Samples go to stdout; logs go to stderr (and optionally a file)
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def _print_network_devices(timeout: float) -> int:
    try:
        devices = asyncio.run(discover_network_devices(timeout))
    except OSError as e:
        logger.error("Error: %s", format_exception(e))
        return 1

    print("Discovered WiFi devices:")
    for device in devices:
        print(f"  - {device.name} ({device.address}:{device.port}) SN:{device.serial_number}")
    return 0


def _print_serial_ports() -> None:
    ports = list_serial_ports()
    print("Available serial ports:")
    if not ports:
        print("  (none found)")
    for port in ports:
        print(f"  - {port}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level, args.log_file)

    discovery_code = 0
    if args.discover:
        discovery_code = _print_network_devices(args.discover_timeout)
    if args.discover_serial:
        _print_serial_ports()

    config = build_config(args)
    if not (args.ip or args.serial or args.mock) and (args.discover or args.discover_serial):
        raise SystemExit(discovery_code)

    try:
        config.validate()
    except ConnectError as e:
        logger.error("%s", e)
        raise SystemExit(SessionOutcome.CONNECT_ERROR.exit_code)

    raise SystemExit(run(config))
