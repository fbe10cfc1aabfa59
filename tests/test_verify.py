import random
import zlib

import pytest

from ssrelay.verify import PACK_UNIT_SIZE, VerifyError, VerifySimple, pack_data


def _pair(seed=1):
    return VerifySimple(random.Random(seed)), VerifySimple(random.Random(seed + 1))


def test_pack_data_layout():
    packet = pack_data(b"abc", 1)
    assert len(packet) == 10
    assert packet[:3] == b"\x00\x0a\x01"
    assert packet[3:6] == b"abc"


def test_pack_data_checksum_invariant():
    packet = pack_data(b"payload", 9)
    assert zlib.crc32(packet) == 0xFFFFFFFF


def test_pack_data_rejects_bad_rand_len():
    with pytest.raises(ValueError):
        pack_data(b"x", 0)


def test_client_to_server_round_trip():
    client, server = _pair()
    message = b"hello world" * 10
    assert server.server_post_decrypt(client.client_pre_encrypt(message)) == message


def test_server_to_client_round_trip():
    client, server = _pair(5)
    message = bytes(range(256))
    assert client.client_post_decrypt(server.server_pre_encrypt(message)) == message


def test_large_data_split_into_units():
    client, server = _pair(7)
    message = bytes(random.Random(3).getrandbits(8) for _ in range(5000))
    wire = client.client_pre_encrypt(message)
    assert server.server_post_decrypt(wire) == message
    first_len = (wire[0] << 8) | wire[1]
    assert first_len - wire[2] - 6 == PACK_UNIT_SIZE


def test_empty_data_produces_nothing():
    client, _ = _pair()
    assert client.client_pre_encrypt(b"") == b""


def test_partial_frames_are_buffered():
    client, server = _pair(11)
    wire = client.client_pre_encrypt(b"split me")
    assert server.server_post_decrypt(wire[:4]) == b""
    assert server.server_post_decrypt(wire[4:]) == b"split me"


def test_bad_crc_raises_and_resets():
    client, server = _pair(13)
    wire = bytearray(client.client_pre_encrypt(b"data"))
    wire[-1] ^= 0xFF
    with pytest.raises(VerifyError):
        server.server_post_decrypt(bytes(wire))
    good = client.client_pre_encrypt(b"again")
    assert server.server_post_decrypt(good) == b"again"


def test_too_long_frame_length():
    _, server = _pair()
    with pytest.raises(VerifyError):
        server.server_post_decrypt(b"\x20\x00\x01")


def test_too_short_frame_length():
    client, _ = _pair()
    with pytest.raises(VerifyError):
        client.client_post_decrypt(b"\x00\x03\x01")


def test_buffer_overflow():
    _, server = _pair()
    with pytest.raises(VerifyError):
        server.server_post_decrypt(bytes(16385))