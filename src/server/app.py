"""Application lifecycle coordinator.

App wires routes, TLS and the listener, then reacts to exactly one lifecycle
signal per run:

- SIGHUP (restart): drain the web server (5s deadline), clean up, fire
  the restart completion. The driver reloads the config and runs a new App.
- SIGTERM (graceful shutdown): drain, clean up, fire the shutdown completion.
- SIGINT (terminate): stop accepting without draining, clean up, fire the
  shutdown completion.

OS signal handlers only enqueue the request; a watcher thread per App
generation performs the transition, so the driver's main thread is never
blocked inside a signal handler.
"""

import logging
import os
import queue
import signal
import threading
from typing import Optional

from config import Config
from server.httpd import Handler, WebServer
from server.ipfilter import IPRuleError
from server.lifecycle import HANDLED_SIGNALS, Completion, LifecycleSignal, State
from server.listener import Listener, ListenerError, bind
from server.routes import init_routes
from server.tls import (
    TLSError,
    TLSMaterial,
    resolve_ssl_context,
    set_min_tls_version,
)
from server.version import MODULE, VERSION

logger = logging.getLogger(__name__)

# Seconds in-flight requests get to finish on restart/shutdown
DRAIN_TIMEOUT = 5.0


class StartupError(Exception):
    """Fatal error while starting the application."""


class App:
    """Main application: wiring, web server and lifecycle transitions."""

    def __init__(
        self,
        config: Config,
        generation: int = 1,
        install_signal_handlers: bool = True,
        drain_timeout: float = DRAIN_TIMEOUT,
        tls_fallback: Optional[tuple[bytes, bytes]] = None,
    ):
        """Initialize the application.

        Args:
            config: Application configuration
            generation: Run counter of the driver loop (1 for the first run)
            install_signal_handlers: Install OS signal handlers in run()
            drain_timeout: Graceful shutdown deadline in seconds
            tls_fallback: (cert, key) PEM pair used when configured
                certificates are unusable (embedded pair if None)
        """
        self.config = config
        self.generation = generation
        self.install_signal_handlers = install_signal_handlers
        self.drain_timeout = drain_timeout
        self.tls_fallback = tls_fallback

        self.handler: Optional[Handler] = None
        self.tls_material: Optional[TLSMaterial] = None
        self.listener: Optional[Listener] = None
        self.web: Optional[WebServer] = None

        self._restart = Completion("restart")
        self._shutdown = Completion("shutdown")
        self._state = State.CREATED
        self._state_lock = threading.Lock()

        self._signals: queue.Queue = queue.Queue(maxsize=1)
        self._armed = False
        self._previous_handlers: dict = {}
        self._watcher: Optional[threading.Thread] = None
        self._serve_thread: Optional[threading.Thread] = None

    @property
    def restart(self) -> Completion:
        """Fired once when a restart transition completed."""
        return self._restart

    @property
    def shutdown(self) -> Completion:
        """Fired once when the application reached its terminal state."""
        return self._shutdown

    @property
    def state(self) -> State:
        with self._state_lock:
            return self._state

    def _set_state(self, state: State):
        with self._state_lock:
            self._state = state

    @property
    def address(self) -> tuple:
        """(host, port) the web server listens on."""
        if self.listener is None:
            raise RuntimeError("Web server not started")
        return self.listener.address

    def run(self) -> "App":
        """Initialize routes, start the web server and arm signal handling.

        Raises:
            StartupError: If routes, TLS or the listener cannot be set up
        """
        logger.info("Initializing application (generation %d)", self.generation)
        try:
            self.init()
        except IPRuleError as e:
            logger.error("Failed to initialize routes: %s", e)
            raise StartupError(f"Route init failed: {e}") from e

        webserver = self.config.webserver
        logger.info("Starting web server on %s:%s", webserver.listen_host, webserver.listen_port)
        try:
            self.start_web_server()
        except (TLSError, ListenerError) as e:
            logger.error(
                "Web server failed to start on %s:%s: %s",
                webserver.listen_host, webserver.listen_port, e,
            )
            raise StartupError(str(e)) from e

        self._set_state(State.RUNNING)
        self.handle_os_signals()

        logger.info("%s started successfully (version %s, pid %d)", MODULE, VERSION, os.getpid())
        return self

    def init(self):
        """Build the handler chain."""
        logger.info("Initializing API routes")
        self.handler = init_routes(self.config)

    def start_web_server(self):
        """Resolve TLS, bind the listener and serve in a background thread.

        Returns once the listener is bound; serving errors are only logged.
        """
        webserver = self.config.webserver
        self.tls_material, context = resolve_ssl_context(
            self.config.is_dev_env(),
            webserver.cert_file,
            webserver.key_file,
            webserver.cert_password.value(),
            fallback=self.tls_fallback,
        )
        logger.info(
            "Certificate %s (SHA256 %s)", self.tls_material.source, self.tls_material.fingerprint
        )

        set_min_tls_version(context, webserver.min_tls)

        self.listener = bind(context, webserver.listen_host, webserver.listen_port)
        self.web = WebServer(self.listener, self.handler, server_version=f"{MODULE}/{VERSION}")

        self._serve_thread = threading.Thread(
            target=self._serve, name=f"webserver-{self.generation}", daemon=True
        )
        self._serve_thread.start()

    def _serve(self):
        host, port = self.listener.address
        logger.info("Starting webserver (host=%s, port=%s)", host, port)
        try:
            self.web.serve_forever()
        except Exception as e:
            logger.error("Failed serving: %s", e)
        finally:
            try:
                self.listener.close()
            except OSError as e:
                logger.error("Failed to close listener: %s", e)

    def handle_os_signals(self):
        """Arm signal handling for this generation.

        Handlers can only be installed from the main thread; elsewhere only
        notify() delivers lifecycle signals.
        """
        self._armed = True
        if self.install_signal_handlers:
            if threading.current_thread() is threading.main_thread():
                for signum in HANDLED_SIGNALS:
                    previous = signal.signal(signum, self._on_signal)
                    # keep the pre-run handler across restart generations
                    owner = getattr(previous, "__self__", None)
                    if isinstance(owner, App):
                        previous = owner._previous_handlers.get(signum, signal.SIG_DFL)
                    self._previous_handlers[signum] = previous
            else:
                logger.warning("Not on the main thread, OS signal handlers not installed")

        self._watcher = threading.Thread(
            target=self._watch_signals, name=f"signal-watcher-{self.generation}", daemon=True
        )
        self._watcher.start()
        logger.info("Starting signal handler")

    def _on_signal(self, signum, frame):
        lifecycle_signal = LifecycleSignal.from_signum(signum)
        if lifecycle_signal is not None:
            self.notify(lifecycle_signal)

    def notify(self, lifecycle_signal: LifecycleSignal) -> bool:
        """Request a lifecycle transition.

        Only one request per generation is accepted; later ones are dropped.

        Returns:
            True if the request was queued
        """
        if not self._armed:
            logger.warning(
                "Dropping %s request, generation %d is not accepting signals",
                lifecycle_signal.value, self.generation,
            )
            return False
        try:
            self._signals.put_nowait(lifecycle_signal)
        except queue.Full:
            logger.warning(
                "Dropping %s request, a transition is already pending", lifecycle_signal.value
            )
            return False
        return True

    def _watch_signals(self):
        lifecycle_signal = self._signals.get()
        self._armed = False
        logger.warning("Received OS signal: %s", lifecycle_signal.name)
        self.shutdown_procedure(lifecycle_signal)

    def shutdown_procedure(self, lifecycle_signal: LifecycleSignal) -> bool:
        """Execute the transition for lifecycle_signal.

        Order: stop accepting, drain (restart/shutdown only), cleanup, fire
        the completion. Drain and cleanup failures are logged and do not stop
        the transition.

        Returns:
            False if the application was not running
        """
        terminate = lifecycle_signal is LifecycleSignal.TERMINATE
        with self._state_lock:
            if self._state is not State.RUNNING:
                logger.warning(
                    "Ignoring %s request, application is %s",
                    lifecycle_signal.value, self._state.value,
                )
                return False
            self._state = State.TERMINATED if terminate else State.DRAINING

        logger.info("Initiating shutdown (mode=%s)", lifecycle_signal.value)

        if terminate:
            self._close_web_server()
        else:
            self._drain_web_server()

        try:
            self.cleanup()
        except Exception as e:
            logger.error("Cleanup failed: %s", e)

        if lifecycle_signal is LifecycleSignal.RESTART:
            self._set_state(State.RESTARTING)
            logger.info("Shutdown completed, preparing to restart")
            self._restart.fire()
            return True

        self._set_state(State.TERMINATED)
        logger.info("%s stopped (version %s, pid %d)", MODULE, VERSION, os.getpid())
        self._shutdown.fire()
        return True

    def _drain_web_server(self):
        if self.web is None:
            return
        try:
            if not self.web.graceful_shutdown(self.drain_timeout):
                logger.error(
                    "Web server shutdown failed: %d connection(s) still active after %.1fs",
                    self.web.active_connections, self.drain_timeout,
                )
        except OSError as e:
            logger.error("Web server shutdown failed: %s", e)

    def _close_web_server(self):
        if self.web is None:
            return
        try:
            self.web.close()
        except OSError as e:
            logger.error("Web server close failed: %s", e)

    def cleanup(self):
        """Free application resources on shutdown and restart."""
        if self.listener is not None:
            self.listener.close()
        self.tls_material = None

    def wait(self, poll_interval: float = 0.5) -> bool:
        """Block until this generation restarts or shuts down.

        Polls so that signal handlers keep running on the main thread.

        Returns:
            True for restart, False for shutdown
        """
        while True:
            if self._restart.wait(poll_interval):
                return True
            if self._shutdown.is_fired():
                self.release_signal_handlers()
                return False

    def release_signal_handlers(self):
        """Restore the OS signal handlers replaced by this generation."""
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
