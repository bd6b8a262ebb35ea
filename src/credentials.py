"""Encrypted-at-rest credentials.

Secrets in the config file (api key, jwt secret, certificate password) are
stored as Fernet tokens with an ``enc:`` prefix. ``--crypt`` produces such a
value. Values without the prefix are taken as plaintext.

The key is read from APP_CRYPT_KEY (urlsafe base64 Fernet key). Without it a
key derived from a built-in passphrase is used, which only protects against
casual reading of the config file.
"""

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

CRYPT_KEY_ENV = "APP_CRYPT_KEY"
ENCRYPTED_PREFIX = "enc:"
_DEFAULT_PASSPHRASE = b"api-template/credentials/v1"


class CredentialError(Exception):
    """Credential encryption or decryption error."""


def _fernet() -> Fernet:
    """Build the Fernet instance for the configured key."""
    key = os.environ.get(CRYPT_KEY_ENV, "")
    if not key:
        key = base64.urlsafe_b64encode(hashlib.sha256(_DEFAULT_PASSPHRASE).digest()).decode()
    try:
        return Fernet(key)
    except ValueError as e:
        raise CredentialError(f"Invalid {CRYPT_KEY_ENV}: {e}") from e


def encrypt(plaintext: str) -> str:
    """Encrypt a value for config storage."""
    token = _fernet().encrypt(plaintext.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("ascii")


def decrypt(value: str) -> str:
    """Decrypt a stored value. Plaintext values are returned unchanged.

    Raises:
        CredentialError: If the value carries the prefix but cannot be decrypted
    """
    if not value.startswith(ENCRYPTED_PREFIX):
        return value
    token = value[len(ENCRYPTED_PREFIX):]
    try:
        return _fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise CredentialError("Cannot decrypt value (wrong key or corrupted token)") from e


class EncryptedString:
    """Opaque holder for a secret.

    The plaintext is only reachable through value(); repr and str are masked so
    a config dump in the debug log never leaks the secret.
    """

    __slots__ = ("_plaintext",)

    def __init__(self, plaintext: str = ""):
        self._plaintext = plaintext

    @classmethod
    def from_stored(cls, stored: Optional[str]) -> "EncryptedString":
        """Create from a config file value (encrypted or plaintext)."""
        if not stored:
            return cls("")
        return cls(decrypt(str(stored)))

    def value(self) -> str:
        return self._plaintext

    def encrypted_value(self) -> str:
        return encrypt(self._plaintext)

    def __bool__(self) -> bool:
        return bool(self._plaintext)

    def __eq__(self, other) -> bool:
        if isinstance(other, EncryptedString):
            return self._plaintext == other._plaintext
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._plaintext)

    def __repr__(self) -> str:
        return "EncryptedString('******')" if self._plaintext else "EncryptedString('')"

    __str__ = __repr__
