"""Network listener with systemd socket activation support.

When the service manager hands over a bound socket (LISTEN_PID equals our
pid) a duplicate of fd 3 is adopted instead of binding a new one. fd 3 itself
stays open so every restart generation can adopt it again.
"""

import logging
import os
import socket
import ssl
import threading

logger = logging.getLogger(__name__)

LISTEN_PID_ENV = "LISTEN_PID"
SD_LISTEN_FDS_START = 3
DEFAULT_BACKLOG = 128


class ListenerError(Exception):
    """Listener bind or adoption error."""


class Listener:
    """TLS-wrapped listening socket.

    close() only closes the socket if it was adopted from the service manager
    (the duplicate, never fd 3); otherwise the web server's own shutdown owns
    the socket. close() is safe to call more than once.
    """

    def __init__(self, sock: socket.socket, adopted: bool = False):
        self.socket = sock
        self.adopted = adopted
        self._closed = False
        self._lock = threading.Lock()

    @property
    def address(self) -> tuple:
        """(host, port) the socket is bound to."""
        return self.socket.getsockname()[:2]

    def close(self):
        with self._lock:
            if not self.adopted or self._closed:
                return
            self._closed = True
        self.socket.close()


def socket_activated() -> bool:
    """True if the service manager passed a listening socket to this process."""
    return os.environ.get(LISTEN_PID_ENV, "") == str(os.getpid())


def bind(context: ssl.SSLContext, host: str, port: int) -> Listener:
    """Create the TLS listener.

    Args:
        context: Server SSLContext
        host: Address to bind to (ignored for socket activation)
        port: Port to listen on (ignored for socket activation)

    Returns:
        Listener

    Raises:
        ListenerError: If the socket cannot be bound or adopted
    """
    if socket_activated():
        fd = -1
        try:
            fd = os.dup(SD_LISTEN_FDS_START)
            sock = socket.socket(fileno=fd)
        except OSError as e:
            if fd != -1:
                os.close(fd)
            raise ListenerError(f"failed listening on systemd socket: {e}") from e
        logger.info("Using systemd socket activation (fd %d)", SD_LISTEN_FDS_START)
        adopted = True
    else:
        family = socket.AF_INET6 if ":" in (host or "") else socket.AF_INET
        try:
            sock = socket.create_server((host, port), family=family, backlog=DEFAULT_BACKLOG)
        except OSError as e:
            raise ListenerError(f"failed listening on port {port}: {e}") from e
        adopted = False

    # Handshakes run in the connection worker, not in the accept loop
    wrapped = context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
    return Listener(wrapped, adopted=adopted)
