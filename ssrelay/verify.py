"""The verify_simple protocol: CRC32-checked framing of a byte stream."""

from __future__ import annotations

import logging
import random
import zlib

__all__ = ["VerifyError", "VerifySimple", "pack_data", "PACK_UNIT_SIZE", "RECV_BUFFER_LIMIT"]

logger = logging.getLogger(__name__)

PACK_UNIT_SIZE = 2000
RECV_BUFFER_LIMIT = 16384
_MAX_FRAME = 8192
_MIN_FRAME = 7


class VerifyError(Exception):
    """A received frame is malformed or fails its checksum."""


def pack_data(data: bytes, rand_len: int) -> bytes:
    """Frame data as: length(2) rand_len(1) padding data crc32(4).

    rand_len counts its own byte and the padding that follows it.
    """
    if not 1 <= rand_len <= 255:
        raise ValueError("rand_len must be between 1 and 255")
    out_size = rand_len + len(data) + 6
    body = (
        out_size.to_bytes(2, "big")
        + bytes([rand_len])
        + bytes(rand_len - 1)
        + bytes(data)
    )
    crc = (0xFFFFFFFF - zlib.crc32(body)) & 0xFFFFFFFF
    return body + crc.to_bytes(4, "little")


class VerifySimple:
    """Per-connection state of the verify_simple protocol."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng if rng is not None else random.Random()
        self._recv_buffer = bytearray()

    def _encode(self, data: bytes) -> bytes:
        data = bytes(data)
        chunks = []
        for start in range(0, len(data), PACK_UNIT_SIZE):
            rand_len = (self._rng.getrandbits(64) & 0xF) + 1
            chunks.append(pack_data(data[start:start + PACK_UNIT_SIZE], rand_len))
        return b"".join(chunks)

    def _decode(self, data: bytes) -> bytes:
        buf = self._recv_buffer
        if len(buf) + len(data) > RECV_BUFFER_LIMIT:
            logger.error("verify_simple: wrong buf length %d", len(buf) + len(data))
            raise VerifyError("receive buffer overflow")
        buf += data
        out = bytearray()
        while len(buf) > 2:
            length = (buf[0] << 8) | buf[1]
            if length >= _MAX_FRAME or length < _MIN_FRAME:
                buf.clear()
                logger.error("verify_simple: wrong length %d", length)
                raise VerifyError(f"wrong frame length {length}")
            if length > len(buf):
                break
            if zlib.crc32(buf[:length]) != 0xFFFFFFFF:
                buf.clear()
                logger.error("verify_simple: wrong crc")
                raise VerifyError("wrong crc")
            start = 2 + buf[2]
            data_size = length - buf[2] - 6
            if data_size > 0:
                out += buf[start:start + data_size]
            del buf[:length]
        return bytes(out)

    def client_pre_encrypt(self, data: bytes) -> bytes:
        """Frame outgoing client data."""
        return self._encode(data)

    def client_post_decrypt(self, data: bytes) -> bytes:
        """Feed received bytes; return the payload of every complete frame."""
        return self._decode(data)

    def server_pre_encrypt(self, data: bytes) -> bytes:
        """Frame outgoing server data."""
        return self._encode(data)

    def server_post_decrypt(self, data: bytes) -> bytes:
        """Feed received bytes; return the payload of every complete frame."""
        return self._decode(data)