"""
DIAL discovery - answers SSDP M-SEARCH requests for the DIAL service.

SSDP is a shared multicast channel: only searches whose ST is exactly
urn:dial-multiscreen-org:service:dial:1 get a reply, sent unicast to the
searcher. Everything else (other services, ssdp:all, garbage) is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional

from ssdp_messages import (
    DIAL_SERVICE_TARGET,
    DeviceIdentity,
    MalformedMessage,
    build_search_response,
    parse_message,
)


class DialDiscoveryProtocol(asyncio.DatagramProtocol):
    """Respond to SSDP M-SEARCH for the DIAL service with the descriptor LOCATION."""

    def __init__(self, identity: DeviceIdentity, location: str, logger: logging.Logger) -> None:
        self.identity = identity
        self.location = location
        self.logger = logger
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.closed: asyncio.Future = asyncio.get_running_loop().create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        response = self.handle_datagram(data, addr)
        if response is None:
            return
        if self.transport:
            self.transport.sendto(response, addr)
            self.logger.debug("SSDP response sent to %s", addr)

    def handle_datagram(self, data: bytes, addr: tuple) -> Optional[bytes]:
        """Return the reply for one datagram, or None if it gets no reply."""
        try:
            msg = parse_message(data)
        except MalformedMessage as e:
            self.logger.debug("SSDP: discarding datagram from %s: %s", addr, e)
            return None
        st = msg.get("ST")
        if st != DIAL_SERVICE_TARGET:
            self.logger.debug("SSDP %s from %s ignored (ST=%s)", msg.method, addr, (st or "")[:50])
            return None
        self.logger.info("SSDP DIAL search from %s:%d", addr[0], addr[1])
        return build_search_response(self.identity, self.location).to_bytes()

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("SSDP socket error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.transport = None
        if exc:
            self.logger.error("SSDP listener stopped: %s", exc)
        if not self.closed.done():
            self.closed.set_result(exc)


async def start_discovery_listener(
    sock: socket.socket,
    identity: DeviceIdentity,
    location: str,
    logger: logging.Logger,
) -> tuple[asyncio.DatagramTransport, DialDiscoveryProtocol]:
    """Start answering M-SEARCH on an already bound and joined SSDP socket."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        lambda: DialDiscoveryProtocol(identity, location, logger),
        sock=sock,
    )
    logger.info("SSDP listening on UDP %s:%d", *sock.getsockname()[:2])
    return transport, protocol
