# src/mcsocks/network.py
"""
Networking primitives shared by the resolver, connector, relay and supervisor.
"""

import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Constants
MINECRAFT_PORT = 25565
SRV_SERVICE = "_minecraft._tcp"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 1337
RELAY_BUFFER_SIZE = 65536
LISTEN_BACKLOG = 128


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def parse_host_port(value: str, default_port: Optional[int] = None) -> Tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into a ``(host, port)`` tuple.

    Raises ValueError when the port is missing, non-numeric or out of range.
    """
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise ValueError(f"Unterminated IPv6 literal in {value!r}")
        host = value[1:end]
        rest = value[end + 1:]
        if rest and not rest.startswith(":"):
            raise ValueError(f"Unexpected text after IPv6 literal in {value!r}")
        port_text = rest[1:] if rest else ""
    else:
        host, sep, port_text = value.rpartition(":")
        if not sep:
            host, port_text = value, ""
        elif ":" in host:
            # bare IPv6 literal without a port
            host, port_text = value, ""

    if not host:
        raise ValueError(f"Missing host in {value!r}")
    if not port_text:
        if default_port is None:
            raise ValueError(f"Missing port in {value!r}")
        return host, default_port
    if not port_text.isdigit():
        raise ValueError(f"Invalid port {port_text!r} in {value!r}")
    port = int(port_text)
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in {value!r}")
    return host, port


def format_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class TargetAddress:
    """A concrete host:port to dial, computed fresh for each connection."""

    host: str
    port: int = MINECRAFT_PORT

    def __str__(self) -> str:
        return format_host_port(self.host, self.port)


class Stream:
    """A connected reader/writer pair owned by exactly one session."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def from_socket(cls, sock: socket.socket) -> "Stream":
        reader, writer = await asyncio.open_connection(sock=sock)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    async def close(self) -> None:
        """Close the transport and wait for it, ignoring errors from a dead peer."""
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Ignoring error while closing stream: {e}")
