import logging
import socketserver
from typing import Callable

logger = logging.getLogger("ipshield.server")

Resolver = Callable[[bytes, str], bytes]


class DNSUDPHandler(socketserver.BaseRequestHandler):
    """
    Handles one UDP DNS datagram by delegating to the configured resolver.

    The resolver is a callable mapping (query_bytes, client_ip) to reply
    bytes; an empty reply means "send nothing".

    Example use:
        This handler is used internally by DNSServer and is not
        typically instantiated directly by users.
    """

    resolver: Resolver = staticmethod(lambda data, ip: b"")  # type: ignore[assignment]

    def handle(self) -> None:
        data, sock = self.request
        client_ip = self.client_address[0]
        try:
            wire = type(self).resolver(data, client_ip)
        except Exception:
            logger.exception("Unhandled error answering UDP query from %s", client_ip)
            return
        if not wire:
            return
        sock.sendto(wire, self.client_address)


class DNSServer:
    """A threaded UDP DNS listener.

    Inputs:
      - host: Address to bind.
      - port: UDP port to bind.
      - resolver: Callable (query_bytes, client_ip) -> reply bytes.

    Outputs:
      - DNSServer; serve_forever() blocks, stop() shuts it down.

    Raises:
      - OSError: when the socket cannot be bound (logged first).

    Example use:
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 5355, responder.resolve_query_bytes)  # doctest: +SKIP
        >>> threading.Thread(target=server.serve_forever, daemon=True).start()  # doctest: +SKIP
        >>> server.stop()  # doctest: +SKIP
    """

    def __init__(self, host: str, port: int, resolver: Resolver) -> None:
        handler_cls = type(
            "BoundDNSUDPHandler",
            (DNSUDPHandler,),
            {"resolver": staticmethod(resolver)},
        )
        try:
            self.server = socketserver.ThreadingUDPServer((host, port), handler_cls)
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            raise
        except OSError as e:
            logger.error("Failed to bind UDP listener on %s:%d: %s", host, port, e)
            raise

        # Ensure request handler threads do not block shutdown
        self.server.daemon_threads = True
        logger.debug("DNS UDP server bound to %s:%d", host, port)

    @property
    def address(self):
        return self.server.server_address

    def serve_forever(self) -> None:
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the underlying UDP socket."""
        try:
            self.server.shutdown()
        except Exception:
            logger.exception("Error while shutting down UDP server")
        try:
            self.server.server_close()
        except Exception:
            logger.exception("Error while closing UDP server socket")
