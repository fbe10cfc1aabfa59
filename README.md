# ssrelay

Building blocks for ShadowsocksR-style proxies. The package is plain Python
and uses only the standard library.

## Modules

### `ssrelay.sni`

`parse_tls_header(data)` reads a TLS ClientHello and returns the first
`host_name` entry of its Server Name Indication extension. If it cannot, it
raises one of these exceptions, which all derive from `SniError`:

- `IncompleteRequest`: the record header or the full record has not arrived yet.
- `NoHostname`: the handshake is valid but has no name. This covers SSL 2.0
  hellos, SSL versions below 3, SSL 3.0 without extensions, and hellos that
  have no SNI extension or no `host_name` entry.
- `InvalidClientHello`: the bytes are not a well-formed ClientHello.

`DEFAULT_PORT` is 443.

```python
from ssrelay.sni import IncompleteRequest, NoHostname, parse_tls_header

try:
    hostname = parse_tls_header(first_bytes)
except IncompleteRequest:
    ...  # read more data and try again
except NoHostname:
    ...  # fall back to a default route
```

### `ssrelay.verify`

This module implements the `verify_simple` protocol. Data is cut into pieces
of at most `PACK_UNIT_SIZE` (2000) bytes. Each piece is sent as one frame:

```
length(2) rand_len(1) padding data crc32(4)
```

The CRC is chosen so that the CRC-32 of the whole frame is `0xFFFFFFFF`.
`pack_data(data, rand_len)` builds a single frame.

`VerifySimple(rng=None)` keeps the receive buffer for one connection. The
padding length is drawn from `rng`.

- `client_pre_encrypt` and `server_pre_encrypt` frame outgoing data.
- `client_post_decrypt` and `server_post_decrypt` take the bytes received so
  far. They return the payload of every complete frame and keep any partial
  frame for the next call.
- `VerifyError` is raised when the buffered data would exceed
  `RECV_BUFFER_LIMIT` (16384 bytes), when a frame length is out of range, or
  when a CRC is wrong.

```python
import random

from ssrelay.verify import VerifySimple

client = VerifySimple(random.Random())
server = VerifySimple(random.Random())

wire = client.client_pre_encrypt(b"hello")
assert server.server_post_decrypt(wire) == b"hello"
```

### `ssrelay.tls_ticket`

This module implements the `tls1.2_ticket_auth` obfuscation. Each connection
opens with a fake TLS 1.2 session-ticket handshake, authenticated with
HMAC-SHA1 truncated to 10 bytes. After the handshake, data travels as TLS
application-data records.

- `ServerInfo` holds `host`, `port`, `key` and `param`, plus a `TicketGlobal`.
  The `param` value is either a comma-separated list of SNI hosts (client
  side) or the maximum allowed clock difference in seconds (server side).
- `TicketGlobal` is the state shared by the connections of one endpoint: the
  client id, the start-up time, and a window of the last `REPLAY_WINDOW`
  handshakes. A handshake seen again is refused as a replay.
- `pack_auth_data(global_data, server, now, random_bytes)` builds the 32-byte
  authenticated random value.
- `Tls12TicketAuth(server, rng=None)` provides `client_encode`,
  `client_decode`, `server_encode` and `server_decode`. The decode methods
  return `(payload, send_back)`. They raise `TicketError` when a record is
  malformed, authentication fails, the clock difference is too large, or a
  replay is detected.

A complete handshake in memory looks like this:

```python
from ssrelay.tls_ticket import ServerInfo, Tls12TicketAuth

client = Tls12TicketAuth(ServerInfo(host="example.com", key=b"secret"))
server = Tls12TicketAuth(ServerInfo(host="example.com", key=b"secret"))

hello = client.client_encode(b"payload")      # ClientHello; payload is buffered
assert server.server_decode(hello) == (b"", True)
reply = server.server_encode(b"")             # ServerHello and Finished
assert client.client_decode(reply) == (b"", True)
finished = client.client_encode(b"")          # Finished and buffered records
assert server.server_decode(finished) == (b"payload", False)
```

### `ssrelay.udpheader`

This module handles the address header at the start of each relayed UDP
packet. The header is ATYP followed by the address and a big-endian port.
ATYP 1 is IPv4, 3 is a length-prefixed domain name and 4 is IPv6.

- `parse_udprelay_header(buf)` returns an `AddressHeader`, with `atyp`,
  `host`, `port`, `length` and `family`, plus a `sockaddr` property. A domain
  name that is an IP literal gets its address family. The function raises
  `HeaderError` on an unknown type or a short buffer.
- `construct_udprelay_header(address)` builds the header for an IP socket
  address.
- `build_tunnel_header(host, port)` builds the header for an IP address or
  for a domain name.
- `get_addr_str(address)` formats an address as `host:port`.
- `hash_key(family, address)` returns the connection-cache key.
- `packet_size_for_mtu(mtu)` returns the largest payload for an interface
  MTU. It gives `DEFAULT_PACKET_SIZE` (1397) when `mtu` is 0 or less.

```python
from ssrelay.udpheader import parse_udprelay_header

header = parse_udprelay_header(b"\x01\x7f\x00\x00\x01\x00\x35" + b"query")
assert (header.host, header.port, header.length) == ("127.0.0.1", 53, 7)
```

### `ssrelay.udprelay`

This module is the server side of the UDP relay.

- `create_server_socket(host, port)` returns a bound, non-blocking UDP
  socket. With no host it prefers a dual-stack IPv6 wildcard.
- `create_remote_socket(ipv6)` returns a non-blocking socket bound to an
  ephemeral port.
- `ConnectionCache(capacity, on_evict)` is a bounded LRU map with `lookup`,
  `insert`, `remove` and `clear`. Every value that is evicted or removed is
  passed to `on_evict`.
- `UdpRelayServer(host, port, mtu, timeout)` works as follows:
  - `handle_client_packet(data, src_addr)` parses the header and forwards the
    payload to its destination. It picks or creates a `RemoteContext` for the
    client and resolves domain names with `getaddrinfo`.
  - `handle_remote_packet(remote, data, src_addr)` puts an address header in
    front of a reply and sends it to the client through the server socket.
  - `expire(now)` closes remote contexts that have been idle for the timeout.
    The timeout is at least `MIN_UDP_TIMEOUT`, 10 seconds.
  - `close()` closes everything. The server can also be used as a context
    manager.

### `ssrelay.utils`

This module holds helpers for a daemon process:

- `configure_logging(use_syslog, use_tty, logfile)` sends messages to syslog,
  a log file or standard error. On standard error the lines look like
  ` <time> INFO: ...` and ` <time> ERROR: ...`, in colour when `use_tty` is
  set. `log_info` and `log_error` write messages through it.
- `run_as(user)` switches to another user, given by name or numeric uid. It
  raises `RunAsError` on failure.
- `daemonize(path)` writes the pid file, starts a new session, changes to
  `/` and closes the standard descriptors.
- `set_nofile(nofile)` sets both limits on open files.
- `usage_text(module, crypto)` returns the help text for a `Module`
  (`LOCAL`, `REMOTE`, `TUNNEL`, `REDIR`, `MANAGER`).
- `is_numeric(s)` and `strndup(s, n)` are small string helpers.

## What the package does not do

- **No command-line programs.** `usage_text` only produces help text. Nothing
  parses those options or starts a proxy.
- **No stream ciphers and no TCP relay.** `UdpRelayServer` forwards the bytes
  it is given as they are.
- **No event loop.** `UdpRelayServer` neither reads its sockets nor runs
  timers. The caller receives datagrams, calls `handle_client_packet` and
  `handle_remote_packet`, and calls `expire` from time to time.
- **Blocking name lookups.** Domain names are resolved with `getaddrinfo`
  inside the call.

## Requirements

Python 3.10 or later. The tests need pytest (`pip install .[test]`).