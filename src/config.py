"""Application configuration.

Configuration is loaded from a single YAML file (default
/opt/api-template/etc/config.yaml). Environment variables referenced as
$VAR or ${VAR} are expanded in the raw file content before parsing; undefined
variables expand to an empty string.

Example:

    logLevel: info
    logDestination: stdout
    webserver:
      listenHost: 0.0.0.0
      listenPort: 4443
      minTLS: "1.2"
      certFile: /opt/api-template/etc/server.pfx
      certPassword: enc:gAAAAAB...
      apiKey: enc:gAAAAAB...
      jwtSecret: ${JWT_SECRET}
      jwtID: api-template
      blockedIPs: 192.168.254.15
      allowedIPs: 127.0.0.1,::1,10.0.0.0/8

The application environment (prod | dev) is read from APP_ENV.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from credentials import CredentialError, EncryptedString

PROD_ENV = "prod"
DEV_ENV = "dev"
APP_ENV_VAR = "APP_ENV"

DEFAULT_CONFIG_FILE = Path("/opt/api-template/etc/config.yaml")
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 4443

LOG_LEVELS = ("trace", "debug", "info", "warning", "warn", "error", "err")

_ENV_REF_RE = re.compile(r"\$\{(\w+)\}|\$(\w+)")


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class WebserverConfig:
    """Webserver and webservice configuration (the `webserver` block)."""
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = DEFAULT_LISTEN_PORT

    # Minimum TLS version: 1.0 | 1.1 | 1.2 | 1.2a | empty (TLS 1.3)
    min_tls: str = ""

    # PEM key/cert pair, or a PKCS12 bundle in cert_file (key_file unused)
    key_file: str = ""
    cert_file: str = ""
    cert_password: EncryptedString = field(default_factory=EncryptedString)

    api_key: EncryptedString = field(default_factory=EncryptedString)
    jwt_secret: EncryptedString = field(default_factory=EncryptedString)
    # Audience of accepted tokens; prevents reuse of a token against another app
    jwt_id: str = ""

    # IP addresses or networks; an empty allow list allows everybody
    blocked_ips: list = field(default_factory=list)
    allowed_ips: list = field(default_factory=list)


@dataclass
class Config:
    """Application configuration."""
    env: str = field(default_factory=lambda: os.getenv(APP_ENV_VAR, PROD_ENV))
    log_level: str = "info"
    log_destination: str = "stdout"
    webserver: WebserverConfig = field(default_factory=WebserverConfig)
    config_file: Optional[Path] = None

    def is_dev_env(self) -> bool:
        """True if "dev" is configured as application environment."""
        return self.env == DEV_ENV


def expand_env(content: str) -> str:
    """Expand $VAR and ${VAR}; undefined variables become empty strings."""
    return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), content)


def _parse_ip_list(value) -> list:
    """Accept a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        raise ConfigError(f"Invalid IP list: {value!r}")
    return [item.strip() for item in items if item.strip()]


def _secret(raw: dict, key: str) -> EncryptedString:
    try:
        return EncryptedString.from_stored(raw.get(key))
    except CredentialError as e:
        raise ConfigError(f"{key}: {e}") from e


def _webserver_from_dict(data: dict, top: dict) -> WebserverConfig:
    """Build WebserverConfig; credentials fall back to top-level keys."""
    merged = {k: top[k] for k in ("apiKey", "jwtSecret", "jwtID") if k in top}
    merged.update(data)

    port = merged.get("listenPort", DEFAULT_LISTEN_PORT)
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ConfigError(f"listenPort must be an integer, got {port!r}")

    return WebserverConfig(
        listen_host=str(merged.get("listenHost") or DEFAULT_LISTEN_HOST),
        listen_port=port,
        min_tls=str(merged.get("minTLS") or ""),
        key_file=str(merged.get("keyFile") or ""),
        cert_file=str(merged.get("certFile") or ""),
        cert_password=_secret(merged, "certPassword"),
        api_key=_secret(merged, "apiKey"),
        jwt_secret=_secret(merged, "jwtSecret"),
        jwt_id=str(merged.get("jwtID") or ""),
        blocked_ips=_parse_ip_list(merged.get("blockedIPs")),
        allowed_ips=_parse_ip_list(merged.get("allowedIPs")),
    )


def load_config(path) -> Config:
    """Load configuration from a YAML file.

    Args:
        path: Path to the config file

    Returns:
        Config

    Raises:
        ConfigError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"invalid or missing file {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(expand_env(content)) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    webserver = data.get("webserver") or {}
    if not isinstance(webserver, dict):
        raise ConfigError("webserver must be a mapping")

    config = Config(webserver=_webserver_from_dict(webserver, data), config_file=path)
    if data.get("logLevel"):
        config.log_level = str(data["logLevel"]).lower()
    if data.get("logDestination"):
        config.log_destination = str(data["logDestination"])
    return config


def apply_overrides(config: Config, log_level: str = "", log_destination: str = "") -> Config:
    """Apply command line overrides for logging.

    Raises:
        ConfigError: For an unknown log level
    """
    if log_level:
        if log_level.lower() not in LOG_LEVELS:
            raise ConfigError(f"invalid log level: {log_level}")
        config.log_level = log_level.lower()
    if log_destination:
        config.log_destination = log_destination
    return config
