"""
SSDP advertisement - multicast socket setup and the startup NOTIFY burst.

The broadcaster sends three ssdp:alive advertisements (root device, device
UUID, device type) to the SSDP multicast group, 100 ms apart. The same socket
is then handed to the discovery listener.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
from typing import Optional

from ssdp_messages import (
    SSDP_MCAST_GRP,
    SSDP_MCAST_PORT,
    DeviceIdentity,
    Role,
    build_advertisement,
)

# Delay between NOTIFY messages so slow receivers are not flooded
ADVERTISEMENT_PACING = 0.1

ADVERTISEMENT_ORDER = (Role.ROOT_DEVICE, Role.DEVICE, Role.DEVICE_TYPE)

_logger = logging.getLogger(__name__)


class TransportSetupError(OSError):
    """SSDP socket could not be bound or joined to the multicast group."""


def open_ssdp_socket(
    bind_host: str = "0.0.0.0",
    port: int = SSDP_MCAST_PORT,
    group: str = SSDP_MCAST_GRP,
    ttl: int = 2,
) -> socket.socket:
    """
    Open a non-blocking UDP socket bound to the SSDP port and joined to the
    multicast group on all interfaces.

    Raises TransportSetupError if the socket cannot be set up.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((bind_host, port))
        mreq = struct.pack("=4sI", socket.inet_aton(group), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, ttl)
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        raise TransportSetupError(f"SSDP socket on {bind_host}:{port} (group {group}): {e}") from e
    return sock


async def broadcast(
    sock: socket.socket,
    identity: DeviceIdentity,
    location: str,
    target: tuple[str, int] = (SSDP_MCAST_GRP, SSDP_MCAST_PORT),
    pacing: float = ADVERTISEMENT_PACING,
    logger: Optional[logging.Logger] = None,
) -> list[bytes]:
    """
    Send the root device, device and device type advertisements to target.

    Each send completes before the pacing delay and the next send. A failed
    send raises OSError and ends the sequence. Returns the payloads sent.
    """
    logger = logger or _logger
    loop = asyncio.get_running_loop()
    sent: list[bytes] = []
    logger.info("Sending %d SSDP advertisements to %s:%d", len(ADVERTISEMENT_ORDER), *target)
    for i, role in enumerate(ADVERTISEMENT_ORDER):
        if i:
            await asyncio.sleep(pacing)
        payload = build_advertisement(identity, role, location).to_bytes()
        await loop.sock_sendto(sock, payload, target)
        sent.append(payload)
        logger.debug("Sent %s advertisement (%d bytes)", role.value, len(payload))
    return sent
