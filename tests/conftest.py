"""Shared pytest fixtures for api-template tests."""

import logging
import signal
import ssl
import subprocess
import sys
from pathlib import Path

import pytest
import yaml

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


def generate_pem_pair(directory: Path, name: str = "server", cn: str = "localhost", bits: int = 2048):
    """Generate a self-signed cert/key pair with the openssl CLI.

    Returns:
        (cert_path, key_path)
    """
    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / f"{name}.crt"
    key_path = directory / f"{name}.key"
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", f"rsa:{bits}",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", "1",
            "-subj", f"/CN={cn}",
            "-addext", "subjectAltName=DNS:localhost,IP:127.0.0.1",
        ],
        check=True,
        capture_output=True,
    )
    return cert_path, key_path


@pytest.fixture
def pem_pair(tmp_path):
    """Self-signed (cert_path, key_path) in tmp_path/certs."""
    return generate_pem_pair(tmp_path / "certs")


@pytest.fixture
def other_pem_pair(tmp_path):
    """A second, unrelated pair (for key/cert mismatch tests)."""
    return generate_pem_pair(tmp_path / "other", name="other", cn="other")


@pytest.fixture
def weak_pem_pair(tmp_path):
    """An RSA-1024 pair: parses fine but is below the TLS security level."""
    cert_path, key_path = generate_pem_pair(tmp_path / "weak", name="weak", bits=1024)
    try:
        ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER).load_cert_chain(cert_path, key_path)
    except ssl.SSLError:
        return cert_path, key_path
    pytest.skip("OpenSSL security level accepts RSA-1024 keys")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate tests from the caller's application environment."""
    for var in ("APP_ENV", "APP_CRYPT_KEY", "LISTEN_PID", "JWT_SECRET"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def restore_signal_handlers():
    """Restore lifecycle signal handlers a test may have replaced."""
    saved = {signum: signal.getsignal(signum)
             for signum in (signal.SIGHUP, signal.SIGTERM, signal.SIGINT)}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


@pytest.fixture
def restore_root_logger():
    """Restore root logger handlers and level after init_logging tests."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield root_logger
    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(level)


@pytest.fixture
def write_config(tmp_path):
    """Factory writing a config file; returns its path.

    Keyword arguments become the webserver block (listens on an ephemeral
    loopback port unless overridden).
    """
    def _write(top=None, **webserver):
        data = dict(top or {})
        block = {"listenHost": "127.0.0.1", "listenPort": 0}
        block.update(webserver)
        data["webserver"] = block
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))
        return path
    return _write
