"""
SSDP message building and parsing for the DIAL responder.

Builds NOTIFY advertisements and M-SEARCH responses as raw HTTP-over-UDP text,
and parses inbound SSDP/HTTP requests into a structured SSDPMessage.

Usage:
    from ssdp_messages import DeviceIdentity, Role, build_advertisement

    identity = DeviceIdentity("170ba466-59ac-4039-a457-0fab725b60ff")
    msg = build_advertisement(identity, Role.ROOT_DEVICE, "http://192.168.1.5:8081/upnp_device_descriptor.xml")
    payload = msg.to_bytes()
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import NamedTuple, Optional, Union

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900
SSDP_HOST = f"{SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}"

DIAL_SERVICE_TARGET = "urn:dial-multiscreen-org:service:dial:1"
ROOT_DEVICE_TARGET = "upnp:rootdevice"
BASIC_DEVICE_TYPE = "urn:schemas-upnp-org:device:Basic:1"

DEFAULT_DEVICE_UUID = "170ba466-59ac-4039-a457-0fab725b60ff"
DEFAULT_SERVER_STRING = "Linux/1.0 UPnP/1.0 DIAL-Responder/1.0"

CACHE_CONTROL = "max-age = 900"
HTTP_VERSION = "HTTP/1.1"

_logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class InvalidHeaderValue(ValueError):
    """Header value cannot be put on the wire (non-ASCII or contains CR/LF)."""


class MalformedMessage(ValueError):
    """Inbound datagram or request that cannot be parsed."""


# -----------------------------------------------------------------------------
# Device identity
# -----------------------------------------------------------------------------


class DeviceIdentity(NamedTuple):
    """
    Root device identity for the lifetime of the process.

    Created once at startup and passed to every component that needs the UUID
    or the SERVER string.
    """

    uuid: str = DEFAULT_DEVICE_UUID
    server: str = DEFAULT_SERVER_STRING

    @property
    def udn(self) -> str:
        """Unique Device Name, e.g. uuid:170ba466-..."""
        return f"uuid:{self.uuid}"


class Role(Enum):
    """Advertisement roles, in the order they are broadcast."""

    ROOT_DEVICE = "root-device"
    DEVICE = "device"
    DEVICE_TYPE = "device-type"


# -----------------------------------------------------------------------------
# Message
# -----------------------------------------------------------------------------


def _check_header_value(name: str, value: str) -> str:
    value = str(value)
    if not value.isascii():
        raise InvalidHeaderValue(f"{name}: non-ASCII header value {value!r}")
    if "\r" in value or "\n" in value:
        raise InvalidHeaderValue(f"{name}: header value contains a line break")
    return value


class SSDPMessage:
    """
    Request- or response-shaped SSDP message.

    start_line is the three fields of the first line: (method, target, version)
    for requests, (version, status, reason) for responses. headers keeps
    insertion order and the key case it was given.

    Outbound messages validate header values; parsed inbound messages pass
    validate=False and keep values as received.
    """

    def __init__(
        self,
        start_line: tuple[str, str, str],
        headers: Optional[dict[str, str]] = None,
        validate: bool = True,
    ) -> None:
        self.start_line = tuple(start_line)
        self.headers: dict[str, str] = {}
        for key, value in (headers or {}).items():
            self.headers[key] = _check_header_value(key, value) if validate else value

    @property
    def method(self) -> str:
        return self.start_line[0]

    @property
    def target(self) -> str:
        return self.start_line[1]

    @property
    def version(self) -> str:
        return self.start_line[2]

    def get(self, name: str) -> Optional[str]:
        return get_header(self.headers, name)

    def __str__(self) -> str:
        lines = [" ".join(self.start_line)]
        lines.extend(f"{key}: {value}" for key, value in self.headers.items())
        return "\r\n".join(lines) + "\r\n\r\n"

    def to_bytes(self) -> bytes:
        return str(self).encode("utf-8")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SSDPMessage):
            return NotImplemented
        return self.start_line == other.start_line and list(self.headers.items()) == list(other.headers.items())

    def __repr__(self) -> str:
        return f"SSDPMessage({self.start_line!r}, {self.headers!r})"


def get_header(headers: dict[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup. Returns None if absent."""
    if name in headers:
        return headers[name]
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------


def _notification_target(identity: DeviceIdentity, role: Role) -> tuple[str, str]:
    """Return (NT, USN) for an advertisement role."""
    if role is Role.ROOT_DEVICE:
        return ROOT_DEVICE_TARGET, f"{identity.udn}::{ROOT_DEVICE_TARGET}"
    if role is Role.DEVICE:
        return identity.udn, identity.udn
    if role is Role.DEVICE_TYPE:
        return BASIC_DEVICE_TYPE, f"{identity.udn}::{BASIC_DEVICE_TYPE}"
    raise ValueError(f"Unknown advertisement role: {role!r}")


def build_advertisement(identity: DeviceIdentity, role: Role, location: str) -> SSDPMessage:
    """Build a NOTIFY ssdp:alive advertisement for the given role."""
    nt, usn = _notification_target(identity, role)
    return SSDPMessage(
        ("NOTIFY", "*", HTTP_VERSION),
        {
            "HOST": SSDP_HOST,
            "cache-control": CACHE_CONTROL,
            "LOCATION": location,
            "NT": nt,
            "USN": usn,
            "NTS": "ssdp:alive",
            "SERVER": identity.server,
        },
    )


def build_search_response(identity: DeviceIdentity, location: str) -> SSDPMessage:
    """Build the unicast 200 OK answer to a DIAL M-SEARCH."""
    return SSDPMessage(
        (HTTP_VERSION, "200", "OK"),
        {
            "LOCATION": location,
            "ST": DIAL_SERVICE_TARGET,
            "USN": f"{identity.udn}::{DIAL_SERVICE_TARGET}",
        },
    )


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------


def parse_headers(lines: list[str]) -> dict[str, str]:
    """
    Parse 'Key: Value' lines into an ordered dict.

    Splits on the first colon so values such as URLs survive. Lines without a
    colon, with an empty key or a key containing whitespace are skipped.
    """
    headers: dict[str, str] = {}
    for line in lines:
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep or not key or key != key.strip() or " " in key or "\t" in key:
            _logger.debug("Skipping invalid header line: %r", line[:100])
            continue
        headers[key] = value.strip()
    return headers


def parse_message(data: Union[bytes, str]) -> SSDPMessage:
    """
    Parse an SSDP datagram or HTTP request head into an SSDPMessage.

    Raises MalformedMessage for undecodable bytes or a first line with fewer
    than three tokens.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"invalid UTF-8: {e}") from e
    else:
        text = data

    head = text.split("\r\n\r\n", 1)[0]
    lines = head.splitlines()
    if not lines:
        raise MalformedMessage("empty message")
    parts = lines[0].split()
    if len(parts) < 3:
        raise MalformedMessage(f"malformed start line: {lines[0][:100]!r}")

    return SSDPMessage(
        (parts[0], parts[1], " ".join(parts[2:])),
        parse_headers(lines[1:]),
        validate=False,
    )
