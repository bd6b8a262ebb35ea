"""TLS material resolution and server context setup.

Certificates are loaded from the configured PEM pair or PKCS12 bundle. If they
cannot be used the embedded self-signed pair (CN=localhost) is used instead,
so a broken certificate never prevents startup. In development mode the
embedded pair is always used.
"""

import logging
import os
import ssl
import tempfile
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

logger = logging.getLogger(__name__)

PKCS12_SUFFIXES = (".pfx", ".p12")

# Mozilla "intermediate" TLS 1.2 suites (ECDHE + AES-GCM / ChaCha20-Poly1305)
MODERN_CIPHERS = (
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
)

MIN_TLS_VERSIONS = {
    "1.0": ssl.TLSVersion.TLSv1,
    "1.1": ssl.TLSVersion.TLSv1_1,
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.2a": ssl.TLSVersion.TLSv1_2,  # all ciphers the ssl module offers
}


class TLSError(Exception):
    """TLS material or context error."""


@dataclass(frozen=True)
class TLSMaterial:
    """Certificate chain and private key in PEM form."""

    cert_pem: bytes
    key_pem: bytes
    password: Optional[bytes] = None
    source: str = ""

    @classmethod
    def from_pem(
        cls,
        cert_pem: bytes,
        key_pem: bytes,
        password: Optional[str] = None,
        source: str = "",
    ) -> "TLSMaterial":
        """Create material from PEM data, verifying that key and cert match.

        Raises:
            TLSError: If the data cannot be parsed or the pair does not match
        """
        pwd = password.encode("utf-8") if password else None
        try:
            certs = x509.load_pem_x509_certificates(cert_pem)
        except ValueError as e:
            raise TLSError(f"failed to parse pem certificate: {e}") from e
        try:
            key = serialization.load_pem_private_key(key_pem, password=pwd)
        except (ValueError, TypeError) as e:
            raise TLSError(f"failed to parse pem private key: {e}") from e

        if _public_bytes(certs[0].public_key()) != _public_bytes(key.public_key()):
            raise TLSError("private key does not match certificate")

        return cls(cert_pem=cert_pem, key_pem=key_pem, password=pwd, source=source)

    @classmethod
    def from_pkcs12(cls, data: bytes, password: str = "", source: str = "") -> "TLSMaterial":
        """Create material from a PKCS12 bundle.

        Raises:
            TLSError: If the bundle cannot be decoded
        """
        pwd = password.encode("utf-8") if password else None
        try:
            key, cert, additional = pkcs12.load_key_and_certificates(data, pwd)
        except (ValueError, TypeError) as e:
            raise TLSError(f"failed decoding pkcs12 certificate: {e}") from e
        if key is None or cert is None:
            raise TLSError("pkcs12 bundle must contain a private key and a certificate")

        chain = [cert, *(additional or [])]
        cert_pem = b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain)
        key_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        return cls(cert_pem=cert_pem, key_pem=key_pem, source=source)

    @property
    def fingerprint(self) -> str:
        """SHA256 fingerprint of the leaf certificate ("AB:CD:...")."""
        cert = x509.load_pem_x509_certificates(self.cert_pem)[0]
        return ":".join(f"{b:02X}" for b in cert.fingerprint(hashes.SHA256()))


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def embedded_pem_pair() -> tuple[bytes, bytes]:
    """Return the self-signed (cert, key) PEM pair shipped with the package."""
    certs = resources.files("server") / "certs"
    return (certs / "cert.pem").read_bytes(), (certs / "key.pem").read_bytes()


def load_tls_material(cert_file: str, key_file: str, password: str = "") -> TLSMaterial:
    """Load material from files.

    A cert_file ending in .pfx or .p12 is decoded as PKCS12 with password and
    key_file is ignored. Otherwise both files are read as PEM.

    Raises:
        TLSError: If a file cannot be read or parsed
    """
    if not cert_file:
        raise TLSError("no certificate file configured")

    try:
        cert_data = Path(cert_file).read_bytes()
    except OSError as e:
        raise TLSError(f"failed reading certificate file {cert_file}: {e}") from e

    if cert_file.lower().endswith(PKCS12_SUFFIXES):
        return TLSMaterial.from_pkcs12(cert_data, password, source=cert_file)

    try:
        key_data = Path(key_file).read_bytes()
    except OSError as e:
        raise TLSError(f"failed reading key file {key_file}: {e}") from e

    # The password only applies to PEM keys that are actually encrypted
    key_password = password if b"ENCRYPTED" in key_data else None
    return TLSMaterial.from_pem(cert_data, key_data, key_password, source=cert_file)


def resolve_ssl_context(
    dev_mode: bool,
    cert_file: str,
    key_file: str,
    password: str = "",
    fallback: Optional[tuple[bytes, bytes]] = None,
) -> tuple[TLSMaterial, ssl.SSLContext]:
    """Resolve the TLS material to serve with and build its server context.

    Configured material is only used if OpenSSL also accepts it; anything
    else (unreadable files, bad password, a key below the security level)
    falls back to the embedded pair.

    Args:
        dev_mode: Always use the fallback pair
        cert_file: PEM certificate or PKCS12 bundle path
        key_file: PEM key path
        password: PKCS12 password (or PEM key passphrase)
        fallback: (cert, key) PEM pair; the embedded pair if None

    Returns:
        (TLSMaterial, SSLContext)

    Raises:
        TLSError: Only if the fallback pair itself is unusable
    """
    if fallback is None:
        fallback = embedded_pem_pair()

    if dev_mode:
        logger.info("Using embedded certificates for development")
    else:
        try:
            material = load_tls_material(cert_file, key_file, password)
            return material, create_ssl_context(material)
        except TLSError as e:
            logger.warning(
                "Failed to load certificates from %s, using embedded certificates: %s",
                cert_file or "(unset)", e,
            )

    try:
        material = TLSMaterial.from_pem(fallback[0], fallback[1], source="embedded")
        return material, create_ssl_context(material)
    except TLSError as e:
        logger.error("Failed to load embedded certificates: %s", e)
        raise


def create_ssl_context(material: TLSMaterial) -> ssl.SSLContext:
    """Build a server SSLContext from material.

    ssl only loads key material from files, so the PEM data is written to
    private temporary files for the duration of the load.

    Raises:
        TLSError: If OpenSSL rejects the material
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

    paths = []
    try:
        for data in (material.cert_pem, material.key_pem):
            with tempfile.NamedTemporaryFile(mode="wb", suffix=".pem", delete=False) as f:
                os.chmod(f.name, 0o600)
                f.write(data)
                paths.append(f.name)
        context.load_cert_chain(certfile=paths[0], keyfile=paths[1], password=material.password)
    except (ssl.SSLError, OSError) as e:
        raise TLSError(f"failed to create tls config: {e}") from e
    finally:
        for path in paths:
            Path(path).unlink(missing_ok=True)

    return context


def set_min_tls_version(context: ssl.SSLContext, min_tls: str) -> ssl.SSLContext:
    """Apply the minimum TLS version policy.

    "1.2" additionally restricts TLS 1.2 to MODERN_CIPHERS. Unknown or empty
    values select the highest protocol version available.
    """
    version = MIN_TLS_VERSIONS.get(min_tls)

    if version is None:
        version = ssl.TLSVersion.TLSv1_3 if ssl.HAS_TLSv1_3 else ssl.TLSVersion.TLSv1_2
        logger.info("Using %s", version.name)
    elif min_tls == "1.2":
        logger.info("Using TLSv1_2 with secure ciphers")
        context.set_ciphers(":".join(MODERN_CIPHERS))
    else:
        logger.info("Using %s", version.name)

    context.minimum_version = version
    return context
