import pytest

from ssrelay.sni import (
    IncompleteRequest,
    InvalidClientHello,
    NoHostname,
    SniError,
    parse_tls_header,
)


def _len2(payload: bytes) -> bytes:
    return len(payload).to_bytes(2, "big")


def _sni_extension(*entries: tuple[int, bytes]) -> bytes:
    body = b"".join(bytes([t]) + _len2(n) + n for t, n in entries)
    lst = _len2(body) + body
    return b"\x00\x00" + _len2(lst) + lst


def client_hello(
    extensions: bytes | None = b"",
    version: tuple[int, int] = (3, 1),
    handshake_type: int = 1,
    content_type: int = 0x16,
) -> bytes:
    body = b"\x03\x03" + b"\x00" * 32 + b"\x00" + b"\x00\x02\x00\x2f" + b"\x01\x00"
    if extensions is not None:
        body += _len2(extensions) + extensions
    handshake = bytes([handshake_type]) + len(body).to_bytes(3, "big") + body
    return bytes([content_type, version[0], version[1]]) + _len2(handshake) + handshake


def test_extracts_hostname():
    record = client_hello(_sni_extension((0, b"example.com")))
    assert parse_tls_header(record) == "example.com"


def test_skips_other_extensions_before_sni():
    other = b"\x00\x17\x00\x00"
    record = client_hello(other + _sni_extension((0, b"www.example.com")))
    assert parse_tls_header(record) == "www.example.com"


def test_skips_unknown_name_type():
    record = client_hello(_sni_extension((1, b"ignored"), (0, b"host.example.com")))
    assert parse_tls_header(record) == "host.example.com"


def test_trailing_data_beyond_record_is_ignored():
    record = client_hello(_sni_extension((0, b"example.com"))) + b"garbage"
    assert parse_tls_header(record) == "example.com"


def test_short_data_is_incomplete():
    with pytest.raises(IncompleteRequest):
        parse_tls_header(b"\x16\x03")


def test_truncated_record_is_incomplete():
    record = client_hello(_sni_extension((0, b"example.com")))
    with pytest.raises(IncompleteRequest):
        parse_tls_header(record[:-3])


def test_ssl2_client_hello_has_no_hostname():
    with pytest.raises(NoHostname):
        parse_tls_header(b"\x80\x2e\x01\x00\x02\x00\x00")


def test_non_handshake_is_invalid():
    record = client_hello(_sni_extension((0, b"example.com")), content_type=0x17)
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_old_ssl_version_has_no_hostname():
    record = client_hello(_sni_extension((0, b"example.com")), version=(2, 0))
    with pytest.raises(NoHostname):
        parse_tls_header(record)


def test_not_client_hello_is_invalid():
    record = client_hello(_sni_extension((0, b"example.com")), handshake_type=2)
    with pytest.raises(InvalidClientHello):
        parse_tls_header(record)


def test_no_sni_extension():
    with pytest.raises(NoHostname):
        parse_tls_header(client_hello(b"\x00\x17\x00\x00"))


def test_ssl3_without_extensions():
    with pytest.raises(NoHostname):
        parse_tls_header(client_hello(None, version=(3, 0)))


def test_tls_without_extensions_is_invalid():
    with pytest.raises(InvalidClientHello):
        parse_tls_header(client_hello(None, version=(3, 1)))


def test_malformed_extension_list_is_invalid():
    with pytest.raises(InvalidClientHello):
        parse_tls_header(client_hello(b"\x00\x17\x00"))


def test_errors_share_base_class():
    with pytest.raises(SniError):
        parse_tls_header(b"")