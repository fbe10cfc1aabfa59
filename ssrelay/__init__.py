"""SNI parsing, verify_simple framing, tls1.2_ticket_auth obfuscation, UDP relay headers and relay core, and daemon utilities."""

__version__ = "0.1.0"