#!/usr/bin/env python3
"""
DIAL Responder - advertise a virtual DIAL device on the local network.

Announces the device with SSDP NOTIFY at startup, answers DIAL M-SEARCH
queries with the descriptor location, and serves the UPnP device descriptor
over HTTP.

Usage:
    python dial_responder.py [--config config.yaml]

    Or with environment variables:
    DIAL_ADVERTISE_IP=192.168.1.20 DIAL_HTTP_PORT=8081 python dial_responder.py
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Optional

import yaml

from descriptor_server import DEFAULT_DESCRIPTOR_FILE, DESCRIPTOR_PATH, start_descriptor_server
from dial_discovery import DialDiscoveryProtocol, start_discovery_listener
from ssdp_advertiser import TransportSetupError, broadcast, open_ssdp_socket
from ssdp_messages import (
    DEFAULT_DEVICE_UUID,
    DEFAULT_SERVER_STRING,
    SSDP_MCAST_PORT,
    DeviceIdentity,
)

# -----------------------------------------------------------------------------
# Logging setup
# -----------------------------------------------------------------------------

def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

DEFAULTS = {
    "advertise_ip": "",
    "http_host": "0.0.0.0",
    "http_port": 8081,
    "http_read_timeout": 10.0,
    "ssdp_bind_host": "0.0.0.0",
    "ssdp_port": SSDP_MCAST_PORT,
    "ssdp_ttl": 2,
    "device_uuid": DEFAULT_DEVICE_UUID,
    "server_string": DEFAULT_SERVER_STRING,
    "friendly_name": "DIAL Responder",
    "descriptor_path": str(DEFAULT_DESCRIPTOR_FILE),
    "log_level": "INFO",
}


def load_config(config_path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file with environment overrides."""
    config = DEFAULTS.copy()

    # Explicit path must exist; the default config.yaml is optional
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f"Config not found: {config_path}")
        path = config_path
    else:
        path = Path(__file__).parent / "config.yaml"
    if path.exists():
        with open(path) as f:
            config.update(yaml.safe_load(f) or {})

    # Environment overrides
    if os.getenv("DIAL_ADVERTISE_IP"):
        config["advertise_ip"] = os.getenv("DIAL_ADVERTISE_IP")
    if os.getenv("DIAL_HTTP_PORT"):
        config["http_port"] = int(os.getenv("DIAL_HTTP_PORT"))
    if os.getenv("DIAL_DEVICE_UUID"):
        config["device_uuid"] = os.getenv("DIAL_DEVICE_UUID")
    if os.getenv("DIAL_DESCRIPTOR_PATH"):
        config["descriptor_path"] = os.getenv("DIAL_DESCRIPTOR_PATH")
    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL")

    return config


def get_advertise_ip(config: dict) -> Optional[str]:
    """Get the IP to advertise in SSDP LOCATION."""
    ip = (config.get("advertise_ip") or "").strip()
    if ip:
        return ip
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(2.0)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return None


def descriptor_url(config: dict, advertise_ip: str) -> str:
    """URL of the device descriptor, used as LOCATION in NOTIFY and M-SEARCH replies."""
    return f"http://{advertise_ip}:{int(config.get('http_port', 8081))}{DESCRIPTOR_PATH}"


# -----------------------------------------------------------------------------
# Responder
# -----------------------------------------------------------------------------

class DialResponder:
    """
    Wires the descriptor server, the startup advertisement and the discovery
    listener together.
    """

    def __init__(self, config: dict, logger: logging.Logger) -> None:
        self.config = config
        self.logger = logger
        self.identity = DeviceIdentity(
            str(config.get("device_uuid") or DEFAULT_DEVICE_UUID),
            str(config.get("server_string") or DEFAULT_SERVER_STRING),
        )
        self.location: Optional[str] = None
        self._http_server: Optional[asyncio.Server] = None
        self._ssdp_transport: Optional[asyncio.DatagramTransport] = None
        self._ssdp_protocol: Optional[DialDiscoveryProtocol] = None

    async def start(self) -> None:
        """
        Start serving. Raises on any setup failure (no advertise IP, HTTP port
        or SSDP socket unavailable, failed advertisement, invalid header value
        from config).
        """
        advertise_ip = get_advertise_ip(self.config)
        if not advertise_ip:
            raise RuntimeError("Could not determine IP to advertise. Set advertise_ip in config.")
        self._http_server = await start_descriptor_server(self.config, self.logger)
        # LOCATION carries the bound port (http_port 0 picks an ephemeral one)
        http_port = self._http_server.sockets[0].getsockname()[1]
        self.location = descriptor_url({"http_port": http_port}, advertise_ip)
        self.logger.info("Advertising %s at %s", self.identity.udn, self.location)

        sock = open_ssdp_socket(
            self.config.get("ssdp_bind_host", "0.0.0.0"),
            int(self.config.get("ssdp_port", SSDP_MCAST_PORT)),
            ttl=int(self.config.get("ssdp_ttl", 2)),
        )
        try:
            await broadcast(sock, self.identity, self.location, logger=self.logger)
            self._ssdp_transport, self._ssdp_protocol = await start_discovery_listener(
                sock, self.identity, self.location, self.logger
            )
        except Exception:
            sock.close()
            raise

    async def wait_closed(self) -> None:
        """Wait until the discovery listener stops."""
        if self._ssdp_protocol:
            await self._ssdp_protocol.closed

    async def stop(self) -> None:
        if self._ssdp_transport:
            self._ssdp_transport.close()
            self._ssdp_transport = None
        if self._http_server:
            self._http_server.close()
            await self._http_server.wait_closed()
            self._http_server = None
        self.logger.info("DIAL responder stopped")


# -----------------------------------------------------------------------------
# Main entry point
# -----------------------------------------------------------------------------

async def main_async(config: dict) -> int:
    """Run the responder until signalled or the listener dies."""
    logger = logging.getLogger("dial-responder")
    responder = DialResponder(config, logger)

    stop_event = asyncio.Event()
    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        # add_signal_handler not supported on Windows
        signal.signal(signal.SIGINT, lambda s, f: stop_event.set())

    try:
        await responder.start()
    except (TransportSetupError, OSError, RuntimeError, ValueError) as e:
        logger.error("Startup failed: %s", e)
        await responder.stop()
        return 1

    stop_task = asyncio.create_task(stop_event.wait())
    listener_task = asyncio.create_task(responder.wait_closed())
    done, pending = await asyncio.wait({stop_task, listener_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()

    exit_code = 0
    if listener_task in done:
        logger.error("SSDP listener closed unexpectedly")
        exit_code = 1
    logger.info("Shutting down...")
    try:
        await asyncio.wait_for(responder.stop(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown timed out, exiting anyway")
    return exit_code


def main() -> int:
    """Parse arguments and run the responder."""
    parser = argparse.ArgumentParser(
        description="DIAL Responder - SSDP discovery and device descriptor for a virtual DIAL device"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config YAML (default: config.yaml in project dir, if present)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 1
    setup_logging(config["log_level"])

    try:
        return asyncio.run(main_async(config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
