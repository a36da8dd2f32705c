"""DNS-over-TCP listener.

Brief:
  Serves RFC 1035 section 4.2.2 framing (2-byte big-endian length prefix)
  with socketserver.ThreadingTCPServer, one thread per connection. Several
  queries may be pipelined on one connection; the connection is closed on
  EOF, idle timeout, or when the resolver returns an empty reply.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import struct
from typing import Callable, Optional

logger = logging.getLogger("ipshield.server.tcp")

Resolver = Callable[[bytes, str], bytes]


def _recv_exact(sock: socket.socket, n: int) -> Optional[bytes]:
    """Brief: Read exactly n bytes or return None on EOF.

    Inputs:
      - sock: Connected socket.
      - n: Number of bytes to read.

    Outputs:
      - bytes of length n, or None when the peer closed early.
    """

    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return bytes(buf)


class DNSTCPHandler(socketserver.BaseRequestHandler):
    """Answer length-prefixed DNS queries on one TCP connection."""

    resolver: Resolver = staticmethod(lambda data, ip: b"")  # type: ignore[assignment]
    idle_timeout: float = 10.0

    def handle(self) -> None:
        sock: socket.socket = self.request
        client_ip = self.client_address[0]
        sock.settimeout(self.idle_timeout)
        try:
            while True:
                header = _recv_exact(sock, 2)
                if header is None:
                    return
                (length,) = struct.unpack("!H", header)
                if length == 0:
                    return
                data = _recv_exact(sock, length)
                if data is None:
                    return
                try:
                    wire = type(self).resolver(data, client_ip)
                except Exception:
                    logger.exception(
                        "Unhandled error answering TCP query from %s", client_ip
                    )
                    return
                if not wire:
                    return
                sock.sendall(struct.pack("!H", len(wire)) + wire)
        except socket.timeout:
            logger.debug("Idle TCP connection from %s timed out", client_ip)
        except OSError as exc:
            logger.debug("TCP connection from %s failed: %s", client_ip, exc)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class DNSTCPServer:
    """Brief: Threaded DNS-over-TCP listener wrapper.

    Inputs (constructor):
      - host: Address to bind.
      - port: TCP port to bind.
      - resolver: Callable (query_bytes, client_ip) -> reply bytes.
      - idle_timeout: Seconds a connection may stay idle between queries.

    Outputs:
      - DNSTCPServer with serve_forever() and stop().

    Raises:
      - OSError: when the socket cannot be bound (logged first).
    """

    def __init__(
        self, host: str, port: int, resolver: Resolver, idle_timeout: float = 10.0
    ) -> None:
        handler_cls = type(
            "BoundDNSTCPHandler",
            (DNSTCPHandler,),
            {"resolver": staticmethod(resolver), "idle_timeout": float(idle_timeout)},
        )
        try:
            self.server = _ThreadingTCPServer((host, port), handler_cls)
        except OSError as e:
            logger.error("Failed to bind TCP listener on %s:%d: %s", host, port, e)
            raise
        logger.debug("DNS TCP server bound to %s:%d", host, port)

    @property
    def address(self):
        return self.server.server_address

    def serve_forever(self) -> None:
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            pass

    def stop(self) -> None:
        try:
            self.server.shutdown()
        except Exception:
            logger.exception("Error while shutting down TCP server")
        try:
            self.server.server_close()
        except Exception:
            logger.exception("Error while closing TCP server socket")
