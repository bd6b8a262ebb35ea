"""IP allow/block filtering.

Entries are literal addresses or CIDR networks. An empty allow list allows
every address; the literal "ALL" in the allow list (case-sensitive) does the
same explicitly. The block
list always wins over the allow list.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterable

from server.httpd import Handler, Request, Response, api_error

logger = logging.getLogger(__name__)

ALLOW_ALL = "ALL"
ERR_FORBIDDEN = "forbidden"


class IPRuleError(ValueError):
    """Unparseable allow/block list entry."""


def parse_networks(entries: Iterable[str]) -> tuple:
    """Parse address/network entries ("ALL" is skipped).

    Raises:
        IPRuleError: For an entry that is neither an address nor a network
    """
    networks = []
    for entry in entries:
        entry = entry.strip()
        if not entry or entry == ALLOW_ALL:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError as e:
            raise IPRuleError(f"invalid IP address or network {entry!r}: {e}") from e
    return tuple(networks)


def _normalize(address: str):
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@dataclass(frozen=True)
class IPRules:
    """Immutable allow/block rule set."""
    allowed: tuple = ()
    blocked: tuple = ()
    allow_all: bool = False

    @classmethod
    def from_lists(cls, allowed: Iterable[str] = (), blocked: Iterable[str] = ()) -> "IPRules":
        allowed = list(allowed)
        return cls(
            allowed=parse_networks(allowed),
            blocked=parse_networks(blocked),
            allow_all=any(e.strip() == ALLOW_ALL for e in allowed),
        )

    @property
    def allows_everyone(self) -> bool:
        return self.allow_all or not self.allowed

    def is_allowed(self, address: str) -> bool:
        """Decide for a client address. Unparseable addresses are rejected."""
        try:
            ip = _normalize(address)
        except ValueError:
            return False

        if any(ip in net for net in self.blocked):
            return False
        if self.allows_everyone:
            return True
        return any(ip in net for net in self.allowed)


def filter_address(remote_address: str, allowed: Iterable[str], blocked: Iterable[str]) -> bool:
    """One-off decision for an address against allow/block lists."""
    return IPRules.from_lists(allowed, blocked).is_allowed(remote_address)


def with_ip_filter(handler: Handler, rules: IPRules) -> Handler:
    """Reject requests from addresses the rules do not allow (403)."""
    def wrapped(request: Request) -> Response:
        if not rules.is_allowed(request.client_address):
            logger.warning("Blocked request %s %s from %s", request.method, request.path, request.client_address)
            return api_error(403, ERR_FORBIDDEN)
        return handler(request)
    return wrapped
