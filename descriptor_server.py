"""
Descriptor server - HTTP endpoint behind the SSDP LOCATION.

Serves GET / (landing page) and GET /upnp_device_descriptor.xml (the UPnP
device descriptor, read from a static file). One request per connection;
the connection is closed after the response.
"""

from __future__ import annotations

import asyncio
import html
import logging
from pathlib import Path
from typing import Optional, Union

from ssdp_messages import MalformedMessage, parse_message

DESCRIPTOR_PATH = "/upnp_device_descriptor.xml"
DEFAULT_DESCRIPTOR_FILE = Path(__file__).parent / "upnp_device_descriptor.xml"

# Requests are small; a head that has not ended by now is not a request
MAX_HEADER_BYTES = 8 * 1024

REASONS = {
    200: "OK",
    404: "Not Found",
    500: "Internal Server Error",
}


class AssetUnavailable(OSError):
    """The descriptor document could not be read."""


class DescriptorAsset:
    """Descriptor XML on disk, read on every request."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise AssetUnavailable(f"Cannot read descriptor {self.path}: {e}") from e


def headers_end(buffer: bytes) -> int:
    """
    Index where the request head ends (CRLF CRLF or bare LF LF, whichever
    comes first), or -1 if the head is not complete yet.
    """
    ends = [i for i in (buffer.find(b"\r\n\r\n"), buffer.find(b"\n\n")) if i >= 0]
    return min(ends) if ends else -1


def landing_page(friendly_name: str) -> bytes:
    name = html.escape(friendly_name)
    return f"<html>\n<head><title>{name}</title></head>\n<body>{name}</body>\n</html>".encode("utf-8")


def http_response(status: int, body: bytes = b"", content_type: Optional[str] = None) -> bytes:
    """Build a complete HTTP/1.1 response with Connection: close."""
    head = [f"HTTP/1.1 {status} {REASONS.get(status, 'Error')}"]
    if content_type:
        head.append(f"Content-Type: {content_type}")
    if status == 200:
        head.append("Access-Control-Allow-Origin: *")
    head.append(f"Content-Length: {len(body)}")
    head.append("Connection: close")
    return ("\r\n".join(head) + "\r\n\r\n").encode("ascii") + body


class DescriptorRequestHandler(asyncio.Protocol):
    """
    One instance per connection. Buffers until the header block is complete,
    routes on method and path, writes one response and closes.
    """

    def __init__(
        self,
        asset: DescriptorAsset,
        landing: bytes,
        logger: logging.Logger,
        read_timeout: Optional[float] = None,
    ) -> None:
        self.asset = asset
        self.landing = landing
        self.logger = logger
        self.read_timeout = read_timeout
        self.transport: Optional[asyncio.Transport] = None
        self._buffer = b""
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._client_ip = "?"

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport
        peername = transport.get_extra_info("peername")
        self._client_ip = peername[0] if peername else "?"
        if self.read_timeout:
            loop = asyncio.get_running_loop()
            self._timeout_handle = loop.call_later(self.read_timeout, self._on_timeout)

    def data_received(self, data: bytes) -> None:
        if self.transport is None:
            return
        self._buffer += data
        end = headers_end(self._buffer)
        if end < 0:
            if len(self._buffer) > MAX_HEADER_BYTES:
                self.logger.debug("HTTP: request head from %s exceeds %d bytes", self._client_ip, MAX_HEADER_BYTES)
                self._close()
            return
        self._cancel_timeout()
        try:
            req = parse_message(self._buffer[:end])
        except MalformedMessage as e:
            self.logger.debug("HTTP: malformed request from %s: %s", self._client_ip, e)
            self._close()
            return

        method = req.method.upper()
        path = req.target.split("?")[0]
        status, body, content_type = self.route(method, path)
        self.transport.write(http_response(status, body, content_type))
        if status == 200:
            self.logger.debug("Client %s request: %s %s -> 200 OK", self._client_ip, method, path)
        else:
            self.logger.info("Client %s request: %s %s -> %d", self._client_ip, method, path, status)
        self._close()

    def route(self, method: str, path: str) -> tuple[int, bytes, Optional[str]]:
        """Return (status, body, content_type) for a request."""
        if method == "GET" and path == "/":
            return 200, self.landing, "text/html; charset=utf-8"
        if method == "GET" and path == DESCRIPTOR_PATH:
            try:
                return 200, self.asset.read(), "application/xml"
            except AssetUnavailable as e:
                self.logger.error("%s", e)
                return 500, b"", None
        return 404, b"", None

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        self.logger.debug("HTTP: read timeout from %s", self._client_ip)
        self._close()

    def _cancel_timeout(self) -> None:
        if self._timeout_handle:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._cancel_timeout()
        self.transport = None

    def _close(self) -> None:
        if self.transport:
            self.transport.close()
            self.transport = None


async def start_descriptor_server(config: dict, logger: logging.Logger) -> asyncio.Server:
    """
    Start the HTTP descriptor server on config['http_host']:config['http_port'].

    Raises OSError if the port cannot be bound.
    """
    asset = DescriptorAsset(config.get("descriptor_path") or DEFAULT_DESCRIPTOR_FILE)
    landing = landing_page(config.get("friendly_name", "DIAL Responder"))
    read_timeout = float(config.get("http_read_timeout", 10.0)) or None
    host = config.get("http_host", "0.0.0.0")
    port = int(config.get("http_port", 8081))

    if not asset.path.is_file():
        logger.warning("Descriptor %s not found; %s will return 500", asset.path, DESCRIPTOR_PATH)

    server = await asyncio.get_running_loop().create_server(
        lambda: DescriptorRequestHandler(asset, landing, logger, read_timeout),
        host,
        port,
        reuse_address=True,
    )
    bound_port = server.sockets[0].getsockname()[1] if server.sockets else port
    logger.info("HTTP descriptor server on %s:%d", host, bound_port)
    return server
