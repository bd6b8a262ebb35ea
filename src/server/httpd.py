"""HTTPS server.

A handler is any callable taking a Request and returning a Response.
Middleware wrap handlers; the Router dispatches on method and path.
WebServer serves a handler on an already-bound Listener with one worker
thread per connection and supports a bounded graceful shutdown.
"""

import json
import logging
import ssl
import threading
import time
from dataclasses import dataclass, field, replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import MappingProxyType
from typing import Callable, Mapping
from urllib.parse import urlsplit

from server.listener import Listener

logger = logging.getLogger(__name__)

# Seconds a connection may take for the TLS handshake and each read
CONNECTION_TIMEOUT = 30.0

CORS_ALLOW_METHODS = "GET, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-Api-Key"
CORS_MAX_AGE_SECONDS = "600"


@dataclass(frozen=True)
class Request:
    """Incoming request as seen by handlers."""
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    client_address: str = ""
    context: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        value = self.headers.get(name)
        if value is None:
            lowered = name.lower()
            for key, val in self.headers.items():
                if key.lower() == lowered:
                    return val
            return default
        return value

    def with_context(self, **values) -> "Request":
        """Return a copy with values added to the context."""
        merged = dict(self.context)
        merged.update(values)
        return replace(self, context=MappingProxyType(merged))


@dataclass
class Response:
    """Outgoing JSON response."""
    status: int = 200
    body: object = None
    headers: dict = field(default_factory=dict)


Handler = Callable[[Request], Response]


def api_error(status: int, message: str) -> Response:
    """Structured error response: {"error": message}."""
    return Response(status=status, body={"error": message})


class Router:
    """Dispatch on method and path.

    Routes are exact paths, or prefixes when registered with a trailing "/".
    Unknown paths return 404, known paths with another method 405.
    """

    def __init__(self):
        self._routes: list[tuple[str, str, Handler]] = []

    def add(self, method: str, path: str, handler: Handler) -> "Router":
        self._routes.append((method.upper(), path, handler))
        return self

    def _matches(self, pattern: str, path: str) -> bool:
        if pattern.endswith("/"):
            return path.startswith(pattern) or path == pattern.rstrip("/")
        return path == pattern

    def __call__(self, request: Request) -> Response:
        path_known = False
        for method, pattern, handler in self._routes:
            if not self._matches(pattern, request.path):
                continue
            if method == request.method or (method == "GET" and request.method == "HEAD"):
                return handler(request)
            # a catch-all route does not make every path known
            if pattern != "/":
                path_known = True
        if path_known:
            return api_error(405, "method not allowed")
        return api_error(404, "not found")


def handle_preflight() -> Handler:
    """Answer CORS preflight requests."""
    def handler(request: Request) -> Response:
        return Response(status=204)
    return handler


def with_cors(handler: Handler) -> Handler:
    """Add CORS headers to every response."""
    def wrapped(request: Request) -> Response:
        response = handler(request)
        response.headers.setdefault("Access-Control-Allow-Origin", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", CORS_ALLOW_METHODS)
        response.headers.setdefault("Access-Control-Allow-Headers", CORS_ALLOW_HEADERS)
        response.headers.setdefault("Access-Control-Max-Age", CORS_MAX_AGE_SECONDS)
        return response
    return wrapped


def _encode(body) -> bytes:
    if body is None:
        return b""
    return json.dumps(body, indent=2).encode("utf-8")


class RequestHandler(BaseHTTPRequestHandler):
    """Adapts http.server requests to the handler chain of the server."""

    timeout = CONNECTION_TIMEOUT

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def version_string(self) -> str:
        return getattr(self.server, "server_software", "") or super().version_string()

    def send_json(self, response: Response, body: bytes = b""):
        """Send a Response with its pre-encoded JSON body."""
        self.send_response(response.status)
        if body:
            self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.end_headers()
        if body and self.command != "HEAD":
            self.wfile.write(body)

    def _dispatch(self):
        request = Request(
            method=self.command,
            path=urlsplit(self.path).path or "/",
            headers=dict(self.headers.items()),
            client_address=self.client_address[0],
        )
        try:
            response = self.server.app(request)
            body = _encode(response.body)
        except Exception:
            logger.exception("Unhandled error for %s %s", request.method, request.path)
            response = api_error(500, "internal server error")
            body = _encode(response.body)
        self.send_json(response, body)

    do_GET = _dispatch
    do_HEAD = _dispatch
    do_OPTIONS = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_DELETE = _dispatch


class WebServer(ThreadingHTTPServer):
    """Threaded HTTPS server on an existing Listener.

    Worker threads are daemon threads and are not joined on close; shutdown
    waits for in-flight connections through graceful_shutdown() instead.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self, listener: Listener, app: Handler, server_version: str = ""):
        super().__init__(listener.address, RequestHandler, bind_and_activate=False)
        # socketserver created its own unbound socket; serve the listener instead
        self.socket.close()
        self.socket = listener.socket
        self.listener = listener
        self.app = app
        self.server_software = server_version

        self._active = 0
        self._idle = threading.Condition()
        self._stopped = False
        self._stop_lock = threading.Lock()

    def server_bind(self):
        # Listener is already bound
        pass

    def get_request(self):
        sock, addr = self.socket.accept()
        sock.settimeout(CONNECTION_TIMEOUT)
        return sock, addr

    def process_request(self, request, client_address):
        with self._idle:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._done()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._done()

    def finish_request(self, request, client_address):
        if isinstance(request, ssl.SSLSocket):
            request.do_handshake()
        super().finish_request(request, client_address)

    def handle_error(self, request, client_address):
        """Log connection errors instead of printing tracebacks."""
        logger.debug("Connection error from %s", client_address[0], exc_info=True)

    def _done(self):
        with self._idle:
            self._active -= 1
            self._idle.notify_all()

    @property
    def active_connections(self) -> int:
        with self._idle:
            return self._active

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no connection is in flight. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._idle:
            while self._active > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def _stop_accepting(self) -> bool:
        """Stop the serve loop and close the listening socket once."""
        with self._stop_lock:
            if self._stopped:
                return False
            self._stopped = True
        self.shutdown()
        self.server_close()
        return True

    def graceful_shutdown(self, timeout: float) -> bool:
        """Stop accepting connections and drain in-flight ones.

        Must be called from another thread than serve_forever().

        Returns:
            True if all connections finished before the deadline
        """
        deadline = time.monotonic() + timeout
        self._stop_accepting()
        return self.wait_idle(max(0.0, deadline - time.monotonic()))

    def close(self):
        """Stop accepting connections without draining."""
        self._stop_accepting()

