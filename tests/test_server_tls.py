"""Tests for server/tls.py - TLS material and context setup."""

import ssl
import sys
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from server.tls import (
    MODERN_CIPHERS,
    TLSError,
    TLSMaterial,
    create_ssl_context,
    embedded_pem_pair,
    load_tls_material,
    resolve_ssl_context,
    set_min_tls_version,
)


def _write_pkcs12(pem_pair, path: Path, password: bytes) -> Path:
    cert_path, key_path = pem_pair
    key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    cert = x509.load_pem_x509_certificate(cert_path.read_bytes())
    path.write_bytes(pkcs12.serialize_key_and_certificates(
        b"server", key, cert, None, serialization.BestAvailableEncryption(password)
    ))
    return path


class TestEmbeddedPair:
    """Tests for the certificates shipped with the package."""

    def test_embedded_pair_is_valid(self):
        cert, key = embedded_pem_pair()
        material = TLSMaterial.from_pem(cert, key, source="embedded")
        assert ":" in material.fingerprint

    def test_embedded_pair_is_localhost(self):
        cert, _ = embedded_pem_pair()
        subject = x509.load_pem_x509_certificate(cert).subject
        assert subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)[0].value == "localhost"


class TestLoadTLSMaterial:
    """Tests for load_tls_material."""

    def test_pem_pair(self, pem_pair):
        cert_path, key_path = pem_pair
        material = load_tls_material(str(cert_path), str(key_path))
        assert material.source == str(cert_path)
        assert material.password is None

    def test_pkcs12_bundle(self, pem_pair, tmp_path):
        """A .pfx certificate file is decoded as PKCS12; key file is ignored."""
        pfx = _write_pkcs12(pem_pair, tmp_path / "server.pfx", b"changeit")
        material = load_tls_material(str(pfx), "", "changeit")

        expected = load_tls_material(str(pem_pair[0]), str(pem_pair[1]))
        assert material.fingerprint == expected.fingerprint
        assert b"BEGIN PRIVATE KEY" in material.key_pem

    def test_pkcs12_wrong_password(self, pem_pair, tmp_path):
        pfx = _write_pkcs12(pem_pair, tmp_path / "server.p12", b"changeit")
        with pytest.raises(TLSError) as exc_info:
            load_tls_material(str(pfx), "", "wrong")
        assert "pkcs12" in str(exc_info.value)

    def test_encrypted_pem_key(self, pem_pair, tmp_path):
        """The password decrypts an encrypted PEM key."""
        cert_path, key_path = pem_pair
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        encrypted_key = tmp_path / "encrypted.key"
        encrypted_key.write_bytes(key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b"keypass"),
        ))

        material = load_tls_material(str(cert_path), str(encrypted_key), "keypass")
        assert material.password == b"keypass"
        assert isinstance(create_ssl_context(material), ssl.SSLContext)

    def test_password_ignored_for_plain_pem(self, pem_pair):
        cert_path, key_path = pem_pair
        material = load_tls_material(str(cert_path), str(key_path), "unused")
        assert material.password is None

    def test_key_mismatch(self, pem_pair, other_pem_pair):
        with pytest.raises(TLSError) as exc_info:
            load_tls_material(str(pem_pair[0]), str(other_pem_pair[1]))
        assert "does not match" in str(exc_info.value)

    def test_missing_files(self, tmp_path):
        with pytest.raises(TLSError):
            load_tls_material(str(tmp_path / "none.crt"), str(tmp_path / "none.key"))

    def test_not_configured(self):
        with pytest.raises(TLSError):
            load_tls_material("", "")

    def test_garbage_certificate(self, tmp_path, pem_pair):
        bad = tmp_path / "bad.crt"
        bad.write_text("not a certificate")
        with pytest.raises(TLSError):
            load_tls_material(str(bad), str(pem_pair[1]))


class TestResolveSSLContext:
    """Tests for resolve_ssl_context fallback behavior."""

    def test_configured_pair(self, pem_pair):
        cert_path, key_path = pem_pair
        material, context = resolve_ssl_context(False, str(cert_path), str(key_path))
        assert material.source == str(cert_path)
        assert isinstance(context, ssl.SSLContext)

    def test_fallback_on_unreadable_files(self, tmp_path, caplog):
        """Unusable certificates fall back to the embedded pair."""
        material, _ = resolve_ssl_context(
            False, str(tmp_path / "missing.crt"), str(tmp_path / "missing.key")
        )
        assert material.source == "embedded"
        assert "using embedded certificates" in caplog.text

    def test_fallback_on_wrong_pkcs12_password(self, pem_pair, tmp_path):
        pfx = _write_pkcs12(pem_pair, tmp_path / "server.pfx", b"changeit")
        material, _ = resolve_ssl_context(False, str(pfx), "", "wrong")
        assert material.source == "embedded"

    def test_fallback_on_key_rejected_by_openssl(self, weak_pem_pair, caplog):
        """A pair that parses but that OpenSSL refuses to load also falls back."""
        cert_path, key_path = weak_pem_pair
        material, context = resolve_ssl_context(False, str(cert_path), str(key_path))
        assert material.source == "embedded"
        assert isinstance(context, ssl.SSLContext)
        assert "failed to create tls config" in caplog.text

    def test_dev_mode_uses_fallback(self, pem_pair):
        """Development mode ignores configured certificates."""
        cert_path, key_path = pem_pair
        material, _ = resolve_ssl_context(True, str(cert_path), str(key_path))
        assert material.source == "embedded"

    def test_custom_fallback(self, pem_pair, tmp_path):
        fallback = (pem_pair[0].read_bytes(), pem_pair[1].read_bytes())
        material, _ = resolve_ssl_context(False, "", "", fallback=fallback)
        assert material.cert_pem == fallback[0]

    def test_invalid_fallback_is_fatal(self, tmp_path):
        with pytest.raises(TLSError):
            resolve_ssl_context(True, "", "", fallback=(b"bad", b"bad"))

    def test_fallback_rejected_by_openssl_is_fatal(self, weak_pem_pair):
        fallback = (weak_pem_pair[0].read_bytes(), weak_pem_pair[1].read_bytes())
        with pytest.raises(TLSError):
            resolve_ssl_context(True, "", "", fallback=fallback)


class TestSSLContext:
    """Tests for create_ssl_context and set_min_tls_version."""

    @pytest.fixture
    def context(self):
        cert, key = embedded_pem_pair()
        return create_ssl_context(TLSMaterial.from_pem(cert, key))

    def test_default_is_tls13(self, context):
        """Empty or unknown values select the highest version."""
        set_min_tls_version(context, "")
        expected = ssl.TLSVersion.TLSv1_3 if ssl.HAS_TLSv1_3 else ssl.TLSVersion.TLSv1_2
        assert context.minimum_version == expected

    def test_unknown_value_is_default(self, context):
        set_min_tls_version(context, "0.9")
        assert context.minimum_version >= ssl.TLSVersion.TLSv1_2

    def test_tls12_modern_ciphers(self, context):
        """1.2 restricts TLS 1.2 suites to the modern set."""
        set_min_tls_version(context, "1.2")
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2
        tls12 = {c["name"] for c in context.get_ciphers() if c["protocol"] == "TLSv1.2"}
        assert tls12 == set(MODERN_CIPHERS)

    def test_tls12a_keeps_default_ciphers(self, context):
        """1.2a only sets the minimum version."""
        default = {c["name"] for c in ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER).get_ciphers()}
        set_min_tls_version(context, "1.2a")
        assert context.minimum_version == ssl.TLSVersion.TLSv1_2
        assert {c["name"] for c in context.get_ciphers()} == default

    def test_rejected_material(self, pem_pair, other_pem_pair):
        """OpenSSL rejecting the material is a TLSError."""
        material = TLSMaterial(
            cert_pem=pem_pair[0].read_bytes(), key_pem=other_pem_pair[1].read_bytes()
        )
        with pytest.raises(TLSError):
            create_ssl_context(material)
