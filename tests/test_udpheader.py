import socket

import pytest

from ssrelay.udpheader import (
    DEFAULT_PACKET_SIZE,
    HeaderError,
    build_tunnel_header,
    construct_udprelay_header,
    get_addr_str,
    hash_key,
    packet_size_for_mtu,
    parse_udprelay_header,
)


def test_parse_ipv4_header():
    header = parse_udprelay_header(b"\x01\x7f\x00\x00\x01\x00\x35payload")
    assert header.host == "127.0.0.1"
    assert header.port == 53
    assert header.length == 7
    assert header.family == socket.AF_INET
    assert header.sockaddr == ("127.0.0.1", 53)


def test_construct_ipv4_wire_bytes():
    assert construct_udprelay_header(("127.0.0.1", 53)) == b"\x01\x7f\x00\x00\x01\x00\x35"


@pytest.mark.parametrize(
    "address",
    [("10.1.2.3", 8388), ("::1", 443, 0, 0), ("2001:db8::5", 65535, 0, 0)],
)
def test_construct_parse_round_trip(address):
    wire = construct_udprelay_header(address)
    header = parse_udprelay_header(wire + b"data")
    assert header.host == address[0]
    assert header.port == address[1]
    assert header.length == len(wire)


def test_parse_domain_header():
    wire = b"\x03\x0bexample.com\x01\xbb"
    header = parse_udprelay_header(wire + b"x")
    assert header.host == "example.com"
    assert header.port == 443
    assert header.length == len(wire)
    assert header.family is None
    assert header.sockaddr is None


def test_parse_domain_ip_literal_has_family():
    wire = build_tunnel_header("example.com", 80).replace(b"\x0bexample.com", b"\x0810.0.0.1")
    header = parse_udprelay_header(wire)
    assert header.host == "10.0.0.1"
    assert header.family == socket.AF_INET


def test_onetime_auth_flag_is_masked():
    header = parse_udprelay_header(b"\x11\x7f\x00\x00\x01\x00\x35")
    assert header.atyp == 1
    assert header.host == "127.0.0.1"


@pytest.mark.parametrize(
    "buf",
    [b"", b"\x01\x7f\x00\x00\x01\x00", b"\x03\x0bexample.co", b"\x04" + bytes(17), b"\x02abcdefg"],
)
def test_invalid_headers_raise(buf):
    with pytest.raises(HeaderError):
        parse_udprelay_header(buf)


def test_tunnel_header_domain_wire_bytes():
    assert build_tunnel_header("example.com", "443") == b"\x03\x0bexample.com\x01\xbb"


def test_tunnel_header_ip_matches_construct():
    assert build_tunnel_header("192.0.2.7", 1080) == construct_udprelay_header(("192.0.2.7", 1080))
    assert build_tunnel_header("::1", 53) == construct_udprelay_header(("::1", 53))


def test_tunnel_header_rejects_long_domain():
    with pytest.raises(HeaderError):
        build_tunnel_header("a" * 256, 80)


def test_construct_rejects_non_ip():
    with pytest.raises(HeaderError):
        construct_udprelay_header(("example.com", 80))


def test_get_addr_str():
    assert get_addr_str(("127.0.0.1", 8080)) == "127.0.0.1:8080"
    assert get_addr_str(("::1", 53, 0, 0)) == "::1:53"
    assert get_addr_str(("not-an-ip", 1)) == "Unknown AF"


def test_hash_key_invariants():
    a = hash_key(socket.AF_INET, ("10.0.0.1", 1000))
    assert a == hash_key(socket.AF_INET, ("10.0.0.1", 1000))
    assert a != hash_key(socket.AF_INET6, ("10.0.0.1", 1000))
    assert a != hash_key(socket.AF_INET, ("10.0.0.1", 1001))
    assert len({a, hash_key(socket.AF_INET, ("10.0.0.1", 1000))}) == 1


def test_packet_size_for_mtu():
    assert packet_size_for_mtu(1492) == 1397
    assert packet_size_for_mtu(0) == DEFAULT_PACKET_SIZE
    assert packet_size_for_mtu(1500) - packet_size_for_mtu(1400) == 100