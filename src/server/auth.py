"""Authentication middleware.

A request is authenticated by either:
- API key: X-Api-Key header equal to the configured api key
- Bearer token: "Authorization: Bearer <jwt>" signed with the configured
  jwt secret, audience jwt_id and purpose "auth"

The API key is checked first; the token is only checked if that fails and
both jwt secret and jwt id are configured.
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Optional

from credentials import EncryptedString
from server.httpd import Handler, Request, Response, api_error
from server.tokens import AUTH_PURPOSE, TokenError, validate_token

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"
API_KEY_PRINCIPAL = "apikey"
ERR_UNAUTHORIZED = "not authorized"


@dataclass(frozen=True)
class AuthConfig:
    """Credentials accepted by with_auth."""
    api_key: EncryptedString = field(default_factory=EncryptedString)
    jwt_secret: EncryptedString = field(default_factory=EncryptedString)
    jwt_id: str = ""
    app_name: str = ""


@dataclass(frozen=True)
class AuthDecision:
    """Outcome of authorize()."""
    authenticated: bool
    principal: str = ""


def extract_bearer_token(auth_header: str) -> Optional[str]:
    """Extract the token from "Bearer <token>".

    The header must be exactly two space-separated parts.

    Returns:
        Token string, or None if not a Bearer token
    """
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def check_api_key(request: Request, api_key: str) -> bool:
    """True if the request carries the api key."""
    presented = request.header(API_KEY_HEADER)
    if not presented or not api_key:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), api_key.encode("utf-8"))


def check_jwt_token(request: Request, config: AuthConfig) -> Optional[dict]:
    """Return the token claims if the request carries a valid bearer token."""
    token = extract_bearer_token(request.header("Authorization"))
    if token is None:
        return None
    try:
        return validate_token(
            token, config.app_name, AUTH_PURPOSE, config.jwt_id, config.jwt_secret.value()
        )
    except TokenError as e:
        logger.debug("Rejected bearer token from %s: %s", request.client_address, e)
        return None


def authorize(request: Request, config: AuthConfig) -> AuthDecision:
    """Decide whether a request is authenticated."""
    if config.api_key and check_api_key(request, config.api_key.value()):
        return AuthDecision(True, API_KEY_PRINCIPAL)

    if config.jwt_secret and config.jwt_id:
        claims = check_jwt_token(request, config)
        if claims is not None:
            return AuthDecision(True, claims["user"])

    return AuthDecision(False)


def with_auth(handler: Handler, config: AuthConfig) -> Handler:
    """Require authentication before calling handler.

    Unauthenticated requests get 401 and never reach handler. The principal is
    stored as "user" in the request context.
    """
    def wrapped(request: Request) -> Response:
        decision = authorize(request, config)
        if not decision.authenticated:
            logger.info(
                "Unauthorized request %s %s from %s",
                request.method, request.path, request.client_address,
            )
            return api_error(401, ERR_UNAUTHORIZED)
        return handler(request.with_context(user=decision.principal))
    return wrapped
