# src/mcsocks/socks5.py
"""
SOCKS5 client (RFC 1928 CONNECT, RFC 1929 username/password) on asyncio streams.

Credential policy: a username or a password on its own still triggers
username/password authentication, with the missing half sent empty.
"""

import asyncio
import ipaddress
import logging
import struct
from typing import Optional, Tuple

from .network import Stream, TargetAddress, is_ip_literal, parse_host_port
from .robustness import ConnectError

logger = logging.getLogger(__name__)

# SOCKS5 constants
SOCKS_VERSION = 0x05
AUTH_NONE = 0x00
AUTH_USERPASS = 0x02
AUTH_NO_ACCEPTABLE = 0xFF
USERPASS_VERSION = 0x01
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
REP_SUCCESS = 0x00

REPLY_MESSAGES = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


class Socks5ProtocolError(Exception):
    """The proxy answered with something other than a successful handshake."""


def resolve_credentials(
    username: Optional[str], password: Optional[str]
) -> Optional[Tuple[str, str]]:
    """Map the optional credentials to the (username, password) pair to send.

    Returns None when neither is given, meaning no authentication is offered.
    """
    if username is None and password is None:
        return None
    return (username or "", password or "")


def build_greeting(credentials: Optional[Tuple[str, str]]) -> bytes:
    if credentials is None:
        return bytes([SOCKS_VERSION, 1, AUTH_NONE])
    return bytes([SOCKS_VERSION, 2, AUTH_NONE, AUTH_USERPASS])


def build_auth_request(username: str, password: str) -> bytes:
    uname = username.encode("utf-8")
    passwd = password.encode("utf-8")
    if len(uname) > 255 or len(passwd) > 255:
        raise ValueError("SOCKS5 username and password must be at most 255 bytes")
    return bytes([USERPASS_VERSION, len(uname)]) + uname + bytes([len(passwd)]) + passwd


def build_connect_request(target: TargetAddress) -> bytes:
    header = bytes([SOCKS_VERSION, CMD_CONNECT, 0x00])
    if is_ip_literal(target.host):
        ip = ipaddress.ip_address(target.host)
        atyp = ATYP_IPV4 if ip.version == 4 else ATYP_IPV6
        addr = bytes([atyp]) + ip.packed
    else:
        name = target.host.encode("idna")
        if len(name) > 255:
            raise ValueError(f"Hostname too long for SOCKS5: {target.host}")
        addr = bytes([ATYP_DOMAIN, len(name)]) + name
    return header + addr + struct.pack("!H", target.port)


async def _negotiate(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    target: TargetAddress,
    credentials: Optional[Tuple[str, str]],
) -> None:
    writer.write(build_greeting(credentials))
    await writer.drain()

    ver, method = await reader.readexactly(2)
    if ver != SOCKS_VERSION:
        raise Socks5ProtocolError(f"unexpected SOCKS version {ver} in method reply")
    if method == AUTH_NO_ACCEPTABLE:
        raise Socks5ProtocolError("proxy accepted none of the offered authentication methods")

    if method == AUTH_USERPASS and credentials is not None:
        writer.write(build_auth_request(*credentials))
        await writer.drain()
        _ver, status = await reader.readexactly(2)
        if status != 0x00:
            raise Socks5ProtocolError(f"authentication rejected by proxy (status {status})")
    elif method != AUTH_NONE:
        raise Socks5ProtocolError(f"proxy selected unoffered method 0x{method:02x}")

    writer.write(build_connect_request(target))
    await writer.drain()

    ver, rep, _rsv, atyp = await reader.readexactly(4)
    if ver != SOCKS_VERSION:
        raise Socks5ProtocolError(f"unexpected SOCKS version {ver} in connect reply")
    if rep != REP_SUCCESS:
        msg = REPLY_MESSAGES.get(rep, f"unknown reply code 0x{rep:02x}")
        raise Socks5ProtocolError(f"proxy refused CONNECT: {msg}")

    # Consume BND.ADDR and BND.PORT so the stream starts at relayed data.
    if atyp == ATYP_IPV4:
        await reader.readexactly(4 + 2)
    elif atyp == ATYP_IPV6:
        await reader.readexactly(16 + 2)
    elif atyp == ATYP_DOMAIN:
        alen = (await reader.readexactly(1))[0]
        await reader.readexactly(alen + 2)
    else:
        raise Socks5ProtocolError(f"unknown address type {atyp} in connect reply")


async def open_connection(
    proxy: str,
    target: TargetAddress,
    username: Optional[str] = None,
    password: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Stream:
    """Dial ``proxy`` and ask it to CONNECT to ``target``.

    Returns the tunneled Stream; any failure is raised as ConnectError.
    """
    credentials = resolve_credentials(username, password)
    try:
        proxy_host, proxy_port = parse_host_port(proxy)
        if credentials is not None:
            build_auth_request(*credentials)
    except ValueError as e:
        raise ConnectError(target, e) from e

    writer = None
    try:
        async with asyncio.timeout(timeout):
            reader, writer = await asyncio.open_connection(proxy_host, proxy_port)
            await _negotiate(reader, writer, target, credentials)
    except TimeoutError as e:
        await _abort(writer)
        raise ConnectError(target, f"timed out after {timeout}s" if timeout else e) from e
    except asyncio.IncompleteReadError as e:
        await _abort(writer)
        raise ConnectError(target, "proxy closed the connection during handshake") from e
    except (OSError, ValueError, Socks5ProtocolError) as e:
        await _abort(writer)
        raise ConnectError(target, e) from e
    except asyncio.CancelledError:
        if writer is not None:
            writer.close()
        raise

    logger.debug(f"SOCKS5 tunnel to {target} via {proxy} established")
    return Stream(reader, writer)


async def _abort(writer: Optional[asyncio.StreamWriter]) -> None:
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


class Socks5Connector:
    """Upstream connector bound to one proxy and one set of credentials."""

    def __init__(
        self,
        proxy: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.proxy = proxy
        self.username = username
        self.password = password
        self.timeout = timeout

    async def connect(self, target: TargetAddress) -> Stream:
        return await open_connection(
            self.proxy, target, self.username, self.password, timeout=self.timeout
        )
