"""Bearer token (JWT) issuing and validation.

Tokens are HS256 JWTs with the claims:
- user: principal name
- sub: purpose ("auth" for API access)
- aud: jwt id of the application (prevents reuse against another app)
- iss: application name
- iat / exp: issue and expiry time
"""

import datetime
from typing import Optional

import jwt

ALGORITHM = "HS256"
AUTH_PURPOSE = "auth"

# Token lifetime per application environment
DEV_TOKEN_TTL = datetime.timedelta(days=1)
PROD_TOKEN_TTL = datetime.timedelta(minutes=5)


class TokenError(Exception):
    """Token validation error."""


def token_ttl(dev_mode: bool) -> datetime.timedelta:
    return DEV_TOKEN_TTL if dev_mode else PROD_TOKEN_TTL


def create_token(
    user: str,
    secret: str,
    jwt_id: str,
    app_name: str,
    purpose: str = AUTH_PURPOSE,
    ttl: datetime.timedelta = PROD_TOKEN_TTL,
    now: Optional[datetime.datetime] = None,
) -> str:
    """Issue a signed token for user."""
    now = now or datetime.datetime.now(tz=datetime.timezone.utc)
    claims = {
        "user": user,
        "sub": purpose,
        "aud": jwt_id,
        "iss": app_name,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def validate_token(token: str, app_name: str, purpose: str, jwt_id: str, secret: str) -> dict:
    """Validate a token and return its claims.

    Raises:
        TokenError: On bad signature, expiry, wrong audience/issuer/purpose
            or a missing user claim
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            audience=jwt_id,
            issuer=app_name,
            options={"require": ["exp", "iat", "sub", "aud", "iss"]},
        )
    except jwt.PyJWTError as e:
        raise TokenError(str(e)) from e

    if claims.get("sub") != purpose:
        raise TokenError(f"token purpose mismatch: {claims.get('sub')!r}")

    user = claims.get("user")
    if not isinstance(user, str) or not user:
        raise TokenError("token has no user claim")

    return claims
