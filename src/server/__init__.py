"""Server package for the api-template HTTPS service.

The App coordinator wires TLS, the listener and the handler chain and
performs graceful restart (SIGHUP) and shutdown (SIGTERM/SIGINT).
"""

from server.app import (
    App,
    StartupError,
    DRAIN_TIMEOUT,
)
from server.lifecycle import (
    Completion,
    LifecycleSignal,
    State,
)
from server.tls import (
    TLSError,
    TLSMaterial,
    resolve_ssl_context,
    set_min_tls_version,
)
from server.listener import (
    Listener,
    ListenerError,
    bind,
)
from server.auth import (
    AuthConfig,
    with_auth,
)
from server.ipfilter import (
    IPRuleError,
    IPRules,
    with_ip_filter,
)
from server.version import MODULE, VERSION

__all__ = [
    # App
    "App",
    "StartupError",
    "DRAIN_TIMEOUT",
    # Lifecycle
    "Completion",
    "LifecycleSignal",
    "State",
    # TLS
    "TLSError",
    "TLSMaterial",
    "resolve_ssl_context",
    "set_min_tls_version",
    # Listener
    "Listener",
    "ListenerError",
    "bind",
    # Middleware
    "AuthConfig",
    "with_auth",
    "IPRuleError",
    "IPRules",
    "with_ip_filter",
    # Version
    "MODULE",
    "VERSION",
]
