"""The tls1.2_ticket_auth obfuscation: a fake TLS 1.2 session-ticket handshake."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import random
import re
import time
from collections import deque
from dataclasses import dataclass, field

__all__ = [
    "TicketError",
    "ServerInfo",
    "TicketGlobal",
    "Tls12TicketAuth",
    "pack_auth_data",
    "HMAC_LEN",
    "CLIENT_ID_LEN",
    "REPLAY_WINDOW",
]

logger = logging.getLogger(__name__)

HMAC_LEN = 10
CLIENT_ID_LEN = 32
REPLAY_WINDOW = 22

_STATUS_INITIAL = 0
_STATUS_HELLO_SENT = 1
_STATUS_HELLO_RECEIVED = 2
_STATUS_SERVER_HELLO_SENT = 3
_STATUS_ESTABLISHED = 8

_SMALL_PACKET = 1024
_CHUNK_THRESHOLD = 2048

_APPLICATION_DATA = b"\x17\x03\x03"
_CHANGE_CIPHER_SPEC = b"\x14\x03\x03\x00\x01\x01"
_FINISHED_HEADER = b"\x16\x03\x03\x00\x20"

_CLIENT_CIPHERS = bytes.fromhex(
    "001cc02bc02fcca9cca8cc14cc13c00ac014c009c013009c0035002f000a0100"
)
_EXT_RENEGOTIATION = bytes.fromhex("ff01000100")
_EXT_TICKET_HEADER = bytes.fromhex("00170000002300d0")
_EXT_TRAILER = bytes.fromhex(
    "000d00160014"
    "0601060305010503040104030301030302010203"
    "000500050100000000"
    "00120000"
    "75500000"
    "000b00020100"
    "000a0006000400170018"
)
_TICKET_LEN = 208
_SERVER_HELLO_TAIL = bytes.fromhex("c02f000005ff01000100")

_ATOI = re.compile(r"\s*([+-]?\d+)")


class TicketError(Exception):
    """Received data is not a valid part of the fake TLS session."""


@dataclass
class TicketGlobal:
    """State shared by all connections of one server or client."""

    local_client_id: bytes = field(default_factory=lambda: os.urandom(CLIENT_ID_LEN))
    client_data: deque = field(default_factory=lambda: deque(maxlen=REPLAY_WINDOW))
    startup_time: int = field(default_factory=lambda: int(time.time()))


@dataclass
class ServerInfo:
    """Connection parameters the obfuscation needs."""

    host: str = ""
    port: int = 0
    key: bytes = b""
    param: str | None = None
    global_data: TicketGlobal = field(default_factory=TicketGlobal)


def _u16(value: int) -> bytes:
    return (value & 0xFFFF).to_bytes(2, "big")


def _auth_hmac(key: bytes, client_id: bytes, message: bytes) -> bytes:
    return hmac.new(key + client_id, message, hashlib.sha1).digest()[:HMAC_LEN]


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def pack_auth_data(
    global_data: TicketGlobal, server: ServerInfo, now: int, random_bytes: bytes
) -> bytes:
    """Return the 32-byte authenticated random: time(4) random(18) hmac(10)."""
    if len(random_bytes) != 18:
        raise ValueError("random_bytes must be 18 bytes long")
    head = (int(now) & 0xFFFFFFFF).to_bytes(4, "big") + bytes(random_bytes)
    return head + _auth_hmac(server.key, global_data.local_client_id, head)


class Tls12TicketAuth:
    """Per-connection state of the tls1.2_ticket_auth obfuscation."""

    def __init__(self, server: ServerInfo, rng: random.Random | None = None) -> None:
        self.server = server
        self._rng = rng if rng is not None else random.SystemRandom()
        self._status = _STATUS_INITIAL
        self._send_buffer = bytearray()
        self._recv_buffer = bytearray()

    @property
    def _global(self) -> TicketGlobal:
        return self.server.global_data

    @property
    def _param(self) -> str | None:
        return self.server.param or None

    def _random_bytes(self, n: int) -> bytes:
        return self._rng.randbytes(n)

    def _auth_data(self) -> bytes:
        return pack_auth_data(
            self._global, self.server, int(time.time()), self._random_bytes(18)
        )

    def _pack_application(self, data: bytes) -> bytes:
        if len(data) < _SMALL_PACKET:
            return _APPLICATION_DATA + _u16(len(data)) + data
        parts = []
        start = 0
        while len(data) - start > _CHUNK_THRESHOLD:
            size = min(self._rng.getrandbits(64) % 4096 + 100, len(data) - start)
            parts.append(_APPLICATION_DATA + _u16(size) + data[start:start + size])
            start += size
        if len(data) - start > 0:
            rest = data[start:]
            parts.append(_APPLICATION_DATA + _u16(len(rest)) + rest)
        return b"".join(parts)

    def _choose_sni(self) -> bytes:
        hosts = (self._param or self.server.host).split(",")
        sni = hosts[self._rng.getrandbits(64) % len(hosts)].encode("utf-8")[:255]
        if sni and sni[-1:].isdigit():
            return b""
        return sni

    def _client_hello(self) -> bytes:
        sni = self._choose_sni()
        extensions = (
            _EXT_RENEGOTIATION
            + b"\x00\x00"
            + _u16(len(sni) + 5)
            + _u16(len(sni) + 3)
            + b"\x00"
            + _u16(len(sni))
            + sni
            + _EXT_TICKET_HEADER
            + self._random_bytes(_TICKET_LEN)
            + _EXT_TRAILER
        )
        body = (
            b"\x03\x03"
            + self._auth_data()
            + b"\x20"
            + self._global.local_client_id
            + _CLIENT_CIPHERS
            + _u16(len(extensions))
            + extensions
        )
        handshake = b"\x01\x00" + _u16(len(body)) + body
        return b"\x16\x03\x01" + _u16(len(handshake)) + handshake

    def _finished(self, prefix: bytes) -> bytes:
        head = prefix + _CHANGE_CIPHER_SPEC + _FINISHED_HEADER + self._random_bytes(22)
        return head + _auth_hmac(self.server.key, self._global.local_client_id, head)

    def client_encode(self, data: bytes) -> bytes:
        """Wrap outgoing client data; during the handshake it is buffered."""
        data = bytes(data)
        if self._status == _STATUS_ESTABLISHED:
            return self._pack_application(data)
        self._send_buffer += _APPLICATION_DATA + _u16(len(data)) + data

        if self._status == _STATUS_INITIAL:
            self._status = _STATUS_HELLO_SENT
            return self._client_hello()
        if not data:
            out = self._finished(b"") + bytes(self._send_buffer)
            self._send_buffer = bytearray()
            self._status = _STATUS_ESTABLISHED
            return out
        return b""

    def server_encode(self, data: bytes) -> bytes:
        """Wrap outgoing server data, or answer a ClientHello."""
        data = bytes(data)
        if self._status == _STATUS_ESTABLISHED:
            return self._pack_application(data)

        self._status = _STATUS_SERVER_HELLO_SENT
        body = (
            b"\x03\x03"
            + self._auth_data()
            + b"\x20"
            + self._global.local_client_id
            + _SERVER_HELLO_TAIL
        )
        handshake = b"\x02\x00" + _u16(len(body)) + body
        hello = b"\x16\x03\x03" + _u16(len(handshake)) + handshake
        return self._finished(hello)

    def client_decode(self, data: bytes) -> tuple[bytes, bool]:
        """Unwrap received data; return (payload, whether to send back)."""
        data = bytes(data)
        if self._status == _STATUS_ESTABLISHED:
            buf = self._recv_buffer
            buf += data
            out = bytearray()
            while len(buf) > 5:
                if buf[0] != 0x17:
                    raise TicketError("not an application data record")
                size = (buf[3] << 8) + buf[4]
                if size + 5 > len(buf):
                    break
                out += buf[5:5 + size]
                del buf[:5 + size]
            return bytes(out), False

        if len(data) < 11 + 32 + 1 + 32:
            raise TicketError("server hello too short")
        expected = _auth_hmac(self.server.key, self._global.local_client_id, data[11:33])
        if not hmac.compare_digest(data[33:43], expected):
            raise TicketError("server hello authentication failed")
        return b"", True

    def _fail(self, message: str) -> TicketError:
        logger.error("%s", message)
        return TicketError(message)

    def server_decode(self, data: bytes) -> tuple[bytes, bool]:
        """Unwrap received data; return (payload, whether to send back)."""
        data = bytes(data)
        if self._status == _STATUS_ESTABLISHED:
            buf = self._recv_buffer
            buf += data
            out = bytearray()
            while len(buf) > 5:
                if buf[:3] != _APPLICATION_DATA:
                    raise self._fail("server_decode data error, wrong tls version 3")
                size = (buf[3] << 8) + buf[4]
                if size + 5 > len(buf):
                    break
                out += buf[5:5 + size]
                del buf[:5 + size]
            return bytes(out), False

        if self._status == _STATUS_SERVER_HELLO_SENT:
            return self._server_decode_finished(data)
        return self._server_decode_hello(data)

    def _server_decode_finished(self, data: bytes) -> tuple[bytes, bool]:
        if len(data) < 43:
            raise self._fail(f"server_decode data error, too short:{len(data)}")
        if data[:6] != _CHANGE_CIPHER_SPEC:
            raise self._fail("server_decode data error, wrong tls version")
        if data[6:11] != _FINISHED_HEADER:
            raise self._fail("server_decode data error, wrong tls version 2")
        expected = _auth_hmac(self.server.key, self._global.local_client_id, data[:33])
        if not hmac.compare_digest(data[33:43], expected):
            raise self._fail("server_decode data error, hash Mismatch")
        self._recv_buffer = bytearray(data[43:])
        self._status = _STATUS_ESTABLISHED
        return self.server_decode(b"")

    def _server_decode_hello(self, data: bytes) -> tuple[bytes, bool]:
        self._status = _STATUS_HELLO_RECEIVED
        if len(data) < 44 or data[:3] != b"\x16\x03\x01":
            raise TicketError("not a TLS client hello record")
        if (data[3] << 8) + data[4] != len(data) - 5:
            raise self._fail("tls_auth wrong tls head size")
        if data[5:7] != b"\x01\x00":
            raise self._fail("tls_auth not client hello message")
        if (data[7] << 8) + data[8] != len(data) - 9:
            raise self._fail("tls_auth wrong message size")
        if data[9:11] != b"\x03\x03":
            raise self._fail("tls_auth wrong tls version")

        verify_id = data[11:43]
        session_id_len = data[43]
        if session_id_len < 32 or len(data) < 44 + session_id_len:
            raise self._fail("tls_auth wrong sessionid_len")
        session_id = data[44:44 + session_id_len]
        self._global.local_client_id = session_id
        expected = _auth_hmac(self.server.key, session_id, verify_id[:22])

        utc_time = int.from_bytes(verify_id[:4], "big")
        now = int(time.time())
        max_time_dif = _atoi(self._param) if self._param else 0
        time_dif = utc_time - now
        if max_time_dif > 0 and (
            time_dif < -max_time_dif
            or time_dif > max_time_dif
            or utc_time - self._global.startup_time < -(max_time_dif // 2)
        ):
            raise self._fail("tls_auth wrong time")

        if not hmac.compare_digest(verify_id[22:32], expected):
            raise self._fail("tls_auth wrong sha1")
        if verify_id in self._global.client_data:
            raise self._fail("replay attack detect!")
        self._global.client_data.append(verify_id)
        return b"", True