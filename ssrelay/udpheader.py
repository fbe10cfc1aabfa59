"""Address headers of shadowsocks UDP relay packets.

A packet starts with ATYP(1), an address and a big-endian port(2):
ATYP 1 is an IPv4 address (4 bytes), 3 a length-prefixed domain name
and 4 an IPv6 address (16 bytes).
"""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass

__all__ = [
    "ADDRTYPE_MASK",
    "ATYP_IPV4",
    "ATYP_DOMAIN",
    "ATYP_IPV6",
    "DEFAULT_PACKET_SIZE",
    "MAX_UDP_PACKET_SIZE",
    "HeaderError",
    "AddressHeader",
    "parse_udprelay_header",
    "construct_udprelay_header",
    "build_tunnel_header",
    "get_addr_str",
    "hash_key",
    "packet_size_for_mtu",
]

ADDRTYPE_MASK = 0x0F
ATYP_IPV4 = 1
ATYP_DOMAIN = 3
ATYP_IPV6 = 4

MAX_UDP_PACKET_SIZE = 65507
# 1492 - 1 - 28 - 2 - 64 = 1397, the default MTU for the UDP relay
DEFAULT_PACKET_SIZE = 1397
_MTU_OVERHEAD = 1 + 28 + 2 + 64


class HeaderError(Exception):
    """An address header is malformed or cannot be built."""


@dataclass(frozen=True)
class AddressHeader:
    """A parsed address header.

    family is set when host is an IP address (given directly or as a
    domain-name literal), and is None for a real domain name.
    """

    atyp: int
    host: str
    port: int
    length: int
    family: socket.AddressFamily | None = None

    @property
    def sockaddr(self) -> tuple | None:
        """The destination as a socket address, or None for a domain name."""
        if self.family == socket.AF_INET:
            return (self.host, self.port)
        if self.family == socket.AF_INET6:
            return (self.host, self.port, 0, 0)
        return None


def _ip_family(text: str) -> socket.AddressFamily | None:
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    return socket.AF_INET if ip.version == 4 else socket.AF_INET6


def parse_udprelay_header(buf: bytes) -> AddressHeader:
    """Parse the address header at the start of buf.

    Raises HeaderError when the address type is unknown or buf is too short.
    """
    buf = bytes(buf)
    if not buf:
        raise HeaderError("[udp] empty packet")
    raw_atyp = buf[0]
    atyp = raw_atyp & ADDRTYPE_MASK
    offset = 1
    host = ""
    family: socket.AddressFamily | None = None

    if atyp == ATYP_IPV4:
        if len(buf) >= 4 + 3:
            host = str(ipaddress.IPv4Address(buf[1:5]))
            family = socket.AF_INET
            offset += 4
    elif atyp == ATYP_DOMAIN:
        if len(buf) >= 2:
            name_len = buf[1]
            if name_len + 4 <= len(buf):
                host = buf[2:2 + name_len].decode("latin-1")
                family = _ip_family(host)
                offset += 1 + name_len
    elif atyp == ATYP_IPV6:
        if len(buf) >= 16 + 3:
            host = str(ipaddress.IPv6Address(buf[1:17]))
            family = socket.AF_INET6
            offset += 16

    if offset == 1:
        raise HeaderError(f"[udp] invalid header with addr type {raw_atyp}")

    port = int.from_bytes(buf[offset:offset + 2], "big")
    return AddressHeader(atyp, host, port, offset + 2, family)


def construct_udprelay_header(address: tuple) -> bytes:
    """Build the header for an IPv4 or IPv6 socket address."""
    host, port = address[0], int(address[1])
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise HeaderError(f"not an IP address: {host!r}") from None
    if not 0 <= port <= 0xFFFF:
        raise HeaderError(f"port out of range: {port}")
    atyp = ATYP_IPV4 if ip.version == 4 else ATYP_IPV6
    return bytes([atyp]) + ip.packed + port.to_bytes(2, "big")


def build_tunnel_header(host: str, port: int | str) -> bytes:
    """Build the header for a tunnel destination, an IP address or a domain."""
    port_num = int(port)
    if not 0 <= port_num <= 0xFFFF:
        raise HeaderError(f"port out of range: {port_num}")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode("utf-8")
        if len(name) > 255:
            raise HeaderError("domain name longer than 255 bytes") from None
        head = bytes([ATYP_DOMAIN, len(name)]) + name
    else:
        atyp = ATYP_IPV4 if ip.version == 4 else ATYP_IPV6
        head = bytes([atyp]) + ip.packed
    return head + port_num.to_bytes(2, "big")


def get_addr_str(address: tuple) -> str:
    """Format a socket address as 'host:port'."""
    try:
        ip = ipaddress.ip_address(address[0])
        port = int(address[1])
    except (ValueError, TypeError, IndexError):
        return "Unknown AF"
    return f"{ip}:{port}"


def hash_key(family: int, address: tuple) -> tuple:
    """Return the connection-cache key for a family and a source address."""
    host = address[0]
    try:
        host = str(ipaddress.ip_address(host))
    except ValueError:
        pass
    return (int(family), host, *address[1:])


def packet_size_for_mtu(mtu: int) -> int:
    """Return the largest relayed payload for an interface MTU (0: default)."""
    if mtu > 0:
        return mtu - _MTU_OVERHEAD
    return DEFAULT_PACKET_SIZE