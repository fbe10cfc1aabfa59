"""Extract the Server Name Indication host name from a TLS ClientHello."""

from __future__ import annotations

import logging

__all__ = [
    "DEFAULT_PORT",
    "SniError",
    "IncompleteRequest",
    "NoHostname",
    "InvalidClientHello",
    "parse_tls_header",
]

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443

_TLS_HEADER_LEN = 5
_TLS_HANDSHAKE_CONTENT_TYPE = 0x16
_TLS_HANDSHAKE_TYPE_CLIENT_HELLO = 0x01


class SniError(Exception):
    """Base class for failures to obtain a host name from a TLS record."""


class IncompleteRequest(SniError):
    """More data is needed before the record can be parsed."""


class NoHostname(SniError):
    """The handshake is valid but carries no usable server name."""


class InvalidClientHello(SniError):
    """The data is not a well-formed TLS ClientHello."""


def _u16(data: bytes, pos: int) -> int:
    return (data[pos] << 8) + data[pos + 1]


def parse_tls_header(data: bytes) -> str:
    """Return the first host name in the SNI extension of a TLS ClientHello.

    Raises IncompleteRequest, NoHostname or InvalidClientHello.
    """
    data = bytes(data)
    if len(data) < _TLS_HEADER_LEN:
        raise IncompleteRequest("shorter than a TLS record header")

    # SSL 2.0 compatible ClientHello (RFC 5246, appendix E.2)
    if data[0] & 0x80 and data[2] == 1:
        logger.debug("Received SSL 2.0 Client Hello which can not support SNI.")
        raise NoHostname("SSL 2.0 client hello")

    if data[0] != _TLS_HANDSHAKE_CONTENT_TYPE:
        logger.debug("Request did not begin with TLS handshake.")
        raise InvalidClientHello("not a TLS handshake record")

    major, minor = data[1], data[2]
    if major < 3:
        logger.debug(
            "Received SSL %d.%d handshake which can not support SNI.", major, minor
        )
        raise NoHostname(f"SSL {major}.{minor} handshake")

    record_len = _u16(data, 3) + _TLS_HEADER_LEN
    if len(data) < record_len:
        raise IncompleteRequest("TLS record not fully received")
    data = data[:record_len]
    end = len(data)

    pos = _TLS_HEADER_LEN
    if pos + 1 > end:
        raise InvalidClientHello("missing handshake type")
    if data[pos] != _TLS_HANDSHAKE_TYPE_CLIENT_HELLO:
        logger.debug("Not a client hello")
        raise InvalidClientHello("not a client hello")

    # handshake type, length, version, random
    pos += 38

    if pos + 1 > end:
        raise InvalidClientHello("truncated session id")
    pos += 1 + data[pos]

    if pos + 2 > end:
        raise InvalidClientHello("truncated cipher suites")
    pos += 2 + _u16(data, pos)

    if pos + 1 > end:
        raise InvalidClientHello("truncated compression methods")
    pos += 1 + data[pos]

    if pos == end and major == 3 and minor == 0:
        logger.debug("Received SSL 3.0 handshake without extensions")
        raise NoHostname("SSL 3.0 handshake without extensions")

    if pos + 2 > end:
        raise InvalidClientHello("truncated extensions length")
    length = _u16(data, pos)
    pos += 2
    if pos + length > end:
        raise InvalidClientHello("extensions overrun the record")
    return _parse_extensions(data[pos:pos + length])


def _parse_extensions(data: bytes) -> str:
    pos = 0
    while pos + 4 <= len(data):
        length = _u16(data, pos + 2)
        if data[pos] == 0 and data[pos + 1] == 0:
            if pos + 4 + length > len(data):
                raise InvalidClientHello("server name extension overruns")
            return _parse_server_name_extension(data[pos + 4:pos + 4 + length])
        pos += 4 + length
    if pos != len(data):
        raise InvalidClientHello("extensions do not end where expected")
    raise NoHostname("no server name extension")


def _parse_server_name_extension(data: bytes) -> str:
    pos = 2  # server name list length
    while pos + 3 < len(data):
        length = _u16(data, pos + 1)
        if pos + 3 + length > len(data):
            raise InvalidClientHello("server name overruns the extension")
        name_type = data[pos]
        if name_type == 0:
            name = data[pos + 3:pos + 3 + length]
            return name.split(b"\0", 1)[0].decode("latin-1")
        logger.debug("Unknown server name extension name type: %d", name_type)
        pos += 3 + length
    if pos != len(data):
        raise InvalidClientHello("server name list does not end where expected")
    raise NoHostname("no host_name entry")