"""Device discovery: UDP broadcast for network devices, port listing for serial."""

from __future__ import annotations

import asyncio
import logging
from typing import Hashable, Union

from google.protobuf.message import DecodeError
from serial.tools import list_ports

from .codec import DISCOVERY_PORT, DISCOVERY_QUERY, DiscoveredDevice, decode_discovery_reply

logger = logging.getLogger(__name__)


DEFAULT_DISCOVERY_TIMEOUT = 5.0


class _DiscoveryProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.devices: dict[Hashable, DiscoveredDevice] = {}

    def datagram_received(self, data: bytes, addr: tuple[Union[str, int], ...]) -> None:
        source = str(addr[0])
        try:
            device = decode_discovery_reply(data, source)
        except DecodeError as e:
            logger.debug("Ignoring non-device datagram from %s: %s", source, e)
            return

        key: Hashable = device.serial_number or (device.address, device.port)
        if key not in self.devices:
            logger.info(
                "Device discovered: %s (%s:%d) SN:%d",
                device.name,
                device.address,
                device.port,
                device.serial_number,
            )
            self.devices[key] = device

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)


async def discover_network_devices(
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
    *,
    broadcast_address: str = "255.255.255.255",
    port: int = DISCOVERY_PORT,
) -> list[DiscoveredDevice]:
    """Broadcast a discovery query and collect device replies.

    The query is sent once; replies are gathered for the whole timeout
    window, since devices answer at their own pace. Devices replying more
    than once are reported once, keyed by serial number.

    Args:
        timeout: Seconds to listen for replies. 0 or less uses the default.
        broadcast_address: Destination of the query. A unicast address can be
            used to probe a single device or subnet relay.
        port: Destination UDP port.

    Returns:
        Discovered devices in reply order.

    Raises:
        OSError: If the UDP socket cannot be created or broadcast is denied.
    """
    if timeout <= 0:
        timeout = DEFAULT_DISCOVERY_TIMEOUT

    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _DiscoveryProtocol, local_addr=("0.0.0.0", 0), allow_broadcast=True
    )
    try:
        logger.info(
            "Discovery started: %s:%d timeout=%.1fs", broadcast_address, port, timeout
        )
        transport.sendto(DISCOVERY_QUERY, (broadcast_address, port))
        await asyncio.sleep(timeout)
    finally:
        transport.close()

    logger.debug("Discovery completed: %d device(s)", len(protocol.devices))
    return list(protocol.devices.values())


def list_serial_ports() -> list[str]:
    """Return the names of serial ports present on this machine, sorted."""
    return sorted(port.device for port in list_ports.comports())
