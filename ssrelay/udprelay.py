"""UDP relay: forward shadowsocks UDP packets to their destinations and back.

Each client source address gets its own outgoing socket (a remote
context). Remote contexts live in a bounded LRU connection cache and expire
after a period without traffic.
"""

from __future__ import annotations

import logging
import socket
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from ssrelay.udpheader import (
    AddressHeader,
    HeaderError,
    construct_udprelay_header,
    get_addr_str,
    hash_key,
    packet_size_for_mtu,
    parse_udprelay_header,
)

__all__ = [
    "MAX_UDP_CONN_NUM",
    "MIN_UDP_TIMEOUT",
    "ConnectionCache",
    "RemoteContext",
    "UdpRelayServer",
    "create_remote_socket",
    "create_server_socket",
]

logger = logging.getLogger(__name__)

MAX_UDP_CONN_NUM = 512
MIN_UDP_TIMEOUT = 10
_QOS_TOS = 46


def _set_common_options(sock: socket.socket) -> None:
    if hasattr(socket, "SO_NOSIGPIPE"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_NOSIGPIPE, 1)
        except OSError:
            pass
    if hasattr(socket, "IP_TOS"):
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, _QOS_TOS)
        except OSError:
            pass


def create_remote_socket(ipv6: bool) -> socket.socket:
    """Return a non-blocking UDP socket bound to an ephemeral wildcard port."""
    family = socket.AF_INET6 if ipv6 else socket.AF_INET
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM)
    except OSError:
        logger.error("[udp] cannot create socket")
        raise
    try:
        sock.bind(("::", 0) if ipv6 else ("0.0.0.0", 0))
    except OSError:
        sock.close()
        logger.error("[udp] cannot bind remote")
        raise
    sock.setblocking(False)
    if hasattr(socket, "SO_BROADCAST"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        except OSError:
            pass
    _set_common_options(sock)
    return sock


def _addrinfo(host: str | None, port: int | str) -> list:
    flags = socket.AI_PASSIVE | getattr(socket, "AI_ADDRCONFIG", 0)
    try:
        return socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM, socket.IPPROTO_UDP, flags
        )
    except socket.gaierror:
        pass
    try:
        return socket.getaddrinfo(
            host,
            port,
            socket.AF_UNSPEC,
            socket.SOCK_DGRAM,
            socket.IPPROTO_UDP,
            socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        logger.error("[udp] getaddrinfo: %s", exc)
        raise


def create_server_socket(host: str | None, port: int | str) -> socket.socket:
    """Return a non-blocking UDP socket bound to host and port.

    With no host, an IPv6 dual-stack wildcard address is preferred.
    Raises OSError when no address can be bound.
    """
    infos = _addrinfo(host, port)
    if host is None:
        for index, info in enumerate(infos):
            if info[0] == socket.AF_INET6:
                infos = infos[index:]
                break

    for family, socktype, proto, _, sockaddr in infos:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError:
            continue
        try:
            if family == socket.AF_INET6:
                sock.setsockopt(
                    socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1 if host else 0
                )
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                    logger.info("udp port reuse enabled")
                except OSError:
                    pass
            _set_common_options(sock)
            sock.bind(sockaddr)
        except OSError as exc:
            logger.error("[udp] bind: %s", exc)
            sock.close()
            continue
        sock.setblocking(False)
        return sock

    logger.error("[udp] cannot bind")
    raise OSError("[udp] cannot bind")


class ConnectionCache:
    """A bounded least-recently-used map; evicted values go to on_evict."""

    def __init__(
        self,
        capacity: int = MAX_UDP_CONN_NUM,
        on_evict: Callable[[Hashable, Any], None] | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._on_evict = on_evict
        self._entries: OrderedDict[Hashable, Any] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def values(self) -> list:
        """The cached values, least recently used first."""
        return list(self._entries.values())

    def _evict(self, key: Hashable, value: Any) -> None:
        if self._on_evict is not None:
            self._on_evict(key, value)

    def lookup(self, key: Hashable) -> Any:
        """Return the value for key, marking it recently used, or None."""
        if key not in self._entries:
            return None
        self._entries.move_to_end(key)
        return self._entries[key]

    def insert(self, key: Hashable, value: Any) -> None:
        """Store value under key, evicting the oldest entry when full."""
        old = self._entries.pop(key, None)
        if old is not None and old is not value:
            self._evict(key, old)
        self._entries[key] = value
        while len(self._entries) > self.capacity:
            oldest_key, oldest = self._entries.popitem(last=False)
            self._evict(oldest_key, oldest)

    def remove(self, key: Hashable) -> bool:
        """Remove and evict key; return whether it was present."""
        if key not in self._entries:
            return False
        self._evict(key, self._entries.pop(key))
        return True

    def clear(self) -> None:
        """Evict every entry."""
        while self._entries:
            key, value = self._entries.popitem(last=False)
            self._evict(key, value)


@dataclass(eq=False)
class RemoteContext:
    """The outgoing socket serving one client source address."""

    sock: socket.socket
    src_addr: tuple
    addr_header: bytes
    af: int = socket.AF_UNSPEC
    dst_addr: tuple | None = None
    last_active: float = 0.0

    @property
    def closed(self) -> bool:
        return self.sock.fileno() == -1

    def touch(self, now: float | None = None) -> None:
        """Restart the inactivity timer."""
        self.last_active = time.monotonic() if now is None else now

    def close(self) -> None:
        self.sock.close()


class UdpRelayServer:
    """The server side of the UDP relay."""

    def __init__(
        self,
        host: str | None = None,
        port: int | str = 0,
        mtu: int = 0,
        timeout: int = 60,
    ) -> None:
        self.packet_size = packet_size_for_mtu(mtu)
        self.buf_size = self.packet_size * 2
        self.timeout = max(int(timeout), MIN_UDP_TIMEOUT)
        self.cache = ConnectionCache(MAX_UDP_CONN_NUM, self._free_remote)
        self.server_socket = create_server_socket(host, port)

    def __enter__(self) -> UdpRelayServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _free_remote(key: Hashable, remote: RemoteContext) -> None:
        logger.debug("[udp] one connection freed")
        remote.close()

    @staticmethod
    def _resolve(host: str, port: int) -> tuple[int, tuple] | None:
        try:
            infos = socket.getaddrinfo(
                host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM, socket.IPPROTO_UDP
            )
        except (socket.gaierror, UnicodeError) as exc:
            logger.error("[udp] unable to resolve %s: %s", host, exc)
            return None
        if not infos:
            return None
        family, _, _, _, sockaddr = infos[0]
        return family, sockaddr

    def _new_remote(
        self, family: int, src_addr: tuple, header: bytes
    ) -> RemoteContext | None:
        try:
            sock = create_remote_socket(family == socket.AF_INET6)
        except OSError:
            logger.error("[udp] bind() error")
            return None
        return RemoteContext(sock=sock, src_addr=src_addr, addr_header=header)

    def handle_client_packet(
        self, data: bytes, src_addr: tuple
    ) -> RemoteContext | None:
        """Forward a packet from a client to its destination.

        Returns the remote context used, or None when the packet was dropped.
        """
        data = bytes(data)
        if len(data) > self.buf_size:
            logger.error("[udp] server_recv_recvfrom fragmentation")
            return None
        try:
            header = parse_udprelay_header(data)
        except HeaderError as exc:
            logger.error("%s", exc)
            return None
        addr_header = data[:header.length]
        payload = data[header.length:]

        family = header.family if header.family is not None else socket.AF_UNSPEC
        key = hash_key(family, src_addr)
        remote: RemoteContext | None = self.cache.lookup(key)
        if remote is not None and hash_key(family, remote.src_addr) != key:
            remote = None
        now = time.monotonic()
        if remote is not None:
            remote.touch(now)
            logger.debug(
                "[udp] cache hit: %s:%d <-> %s",
                header.host, header.port, get_addr_str(src_addr),
            )
        else:
            logger.debug(
                "[udp] cache miss: %s:%d <-> %s",
                header.host, header.port, get_addr_str(src_addr),
            )

        if len(payload) > self.packet_size:
            logger.error("[udp] server_recv_sendto fragmentation")
            return None

        cache_hit = remote is not None
        dst_addr: tuple | None = header.sockaddr
        dst_family = family
        if cache_hit:
            if addr_header == remote.addr_header:
                dst_addr = remote.dst_addr
            elif dst_addr is None:
                resolved = self._resolve(header.host, header.port)
                if resolved is None:
                    return None
                dst_family, dst_addr = resolved
                remote.dst_addr = dst_addr
        else:
            if dst_addr is None:
                resolved = self._resolve(header.host, header.port)
                if resolved is None:
                    return None
                dst_family, dst_addr = resolved
            remote = self._new_remote(dst_family, src_addr, addr_header)
            if remote is None:
                return None
            remote.dst_addr = dst_addr
            if header.family is not None:
                remote.af = header.family

        try:
            remote.sock.sendto(payload, dst_addr)
        except OSError as exc:
            logger.error("[udp] sendto_remote: %s", exc)
            if not cache_hit:
                remote.close()
            return None

        if not cache_hit:
            remote.touch(now)
            self.cache.insert(hash_key(remote.af, remote.src_addr), remote)
        return remote

    def handle_remote_packet(
        self, remote: RemoteContext, data: bytes, src_addr: tuple
    ) -> bytes | None:
        """Send a reply from a destination back to the client.

        Returns the packet sent to the client, or None when it was dropped.
        """
        data = bytes(data)
        if len(data) > self.packet_size:
            logger.error("[udp] remote_recv_recvfrom fragmentation")
            return None

        addr_header = remote.addr_header
        if remote.af in (socket.AF_INET, socket.AF_INET6):
            try:
                addr_header = construct_udprelay_header(src_addr)
            except HeaderError as exc:
                logger.error("%s", exc)
                return None
        packet = addr_header + data
        if len(packet) > self.packet_size:
            logger.error("[udp] remote_recv_sendto fragmentation")
            return None

        try:
            self.server_socket.sendto(packet, remote.src_addr)
        except OSError as exc:
            logger.error("[udp] remote_recv_sendto: %s", exc)
            return None
        remote.touch()
        return packet

    def expire(self, now: float | None = None) -> int:
        """Drop remote contexts idle for the timeout; return how many."""
        now = time.monotonic() if now is None else now
        stale = [
            hash_key(remote.af, remote.src_addr)
            for remote in self.cache.values()
            if now - remote.last_active >= self.timeout
        ]
        for key in stale:
            logger.debug("[udp] connection timeout")
            self.cache.remove(key)
        return len(stale)

    def close(self) -> None:
        """Close every remote context and the server socket."""
        self.cache.clear()
        self.server_socket.close()