from __future__ import annotations
import os
from dataclasses import dataclass, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.log import get_logger

logger = get_logger(__name__)


class ConfigError(ValueError):
    """Raised when the endpoint or a configuration value is unusable."""
    pass


DEFAULT_URL = "wss://localhost:8443/production"

# environment variable -> config field
_ENV_OVERRIDES = {
    "COSIGN_URL": "url",
    "COSIGN_CLIENT_ID": "client_id",
    "COSIGN_SOURCE_ID": "source_id",
    "COSIGN_PROFILE": "profile",
    "COSIGN_SIGNING_OPERATION": "signing_operation",
    "COSIGN_ALLOW_INSECURE_TLS": "allow_insecure_tls",
    "COSIGN_LOG_LEVEL": "log_level",
}

_RETRY_POLICIES = ("fixed", "exponential")


@dataclass
class ClientConfig:
    url: str = DEFAULT_URL
    client_type: str = "cli"
    client_id: str = "cli123"
    source_id: Optional[str] = None          # defaults to client_id
    action: str = "sendServer"
    profile: str = "partial-sig"
    signing_operation: Optional[str] = None  # overrides the profile's discriminator
    # Development only: accept self-signed certificates
    allow_insecure_tls: bool = False
    keepalive_interval: float = 240.0
    probe_timeout: float = 10.0
    dial_timeout: float = 10.0
    write_timeout: Optional[float] = None    # defaults to probe_timeout
    reconnect_delay: float = 5.0
    retry_policy: str = "fixed"
    max_reconnect_delay: float = 300.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.source_id:
            self.source_id = self.client_id
        if self.write_timeout is None:
            self.write_timeout = self.probe_timeout

    def validate(self) -> "ClientConfig":
        """Check value ranges; the endpoint itself is validated on every dial."""
        if not self.client_id:
            raise ConfigError("client_id must not be empty")
        for name in ("keepalive_interval", "probe_timeout", "dial_timeout", "write_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.reconnect_delay < 0:
            raise ConfigError("reconnect_delay must not be negative")
        if self.retry_policy not in _RETRY_POLICIES:
            raise ConfigError(f"retry_policy must be one of {', '.join(_RETRY_POLICIES)}")
        return self

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, value: Any) -> Any:
    """Convert string values (env vars, CLI) to the field's type"""
    if value is None:
        return None
    if name == "allow_insecure_tls":
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    if name in ("keepalive_interval", "probe_timeout", "dial_timeout",
                "write_timeout", "reconnect_delay", "max_reconnect_delay"):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {value!r}")
    return str(value)


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping of config fields."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error reading {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def load_config(path: Optional[Path] = None, **overrides: Any) -> ClientConfig:
    """
    Build the effective configuration.

    Precedence (lowest first): dataclass defaults, YAML file, COSIGN_* environment
    variables, explicit overrides. Overrides set to None are ignored.
    """
    known = {f.name for f in fields(ClientConfig)}
    values: Dict[str, Any] = {}

    if path is None and os.getenv("COSIGN_CONFIG"):
        path = Path(os.environ["COSIGN_CONFIG"])
    if path is not None:
        for key, value in _load_yaml(Path(path)).items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r in %s", key, path)
                continue
            values[key] = _coerce(key, value)

    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None and raw != "":
            values[field_name] = _coerce(field_name, raw)

    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config field: {key}")
        if value is not None:
            values[key] = _coerce(key, value)

    config = ClientConfig(**values).validate()
    if config.allow_insecure_tls:
        logger.warning("TLS certificate verification is DISABLED (allow_insecure_tls). Development use only.")
    return config
