"""Cluster-default configuration for the operator.

Values come from an optional YAML file (``CDB_CONFIG_FILE``) and from
environment variables, the latter taking precedence. Optional fields of a
CDBootstrap resource fall back to the defaults held here.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import yaml

from . import constants as C
from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CDB_"


@dataclass
class Settings:
    """Operator configuration."""

    default_tenant: Optional[str] = None
    default_spn: Optional[str] = None
    default_keyvault: Optional[str] = None
    default_oid: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    client_secrets: Dict[str, str] = field(default_factory=dict, repr=False)

    agent_image: str = C.DEFAULT_AGENT_IMAGE
    agent_pull_policy: str = C.DEFAULT_AGENT_PULL_POLICY

    workers: int = 4
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0

    resolver_attempts: int = 3
    resolver_backoff_seconds: float = 0.5
    token_skew_seconds: float = 60.0

    # Per-call timeout for the Kubernetes API, the identity provider and the vault
    api_timeout_seconds: float = 30.0

    def client_secret_for(self, spn: str) -> Optional[str]:
        """Client secret used to authenticate ``spn`` against the identity provider."""
        if spn in self.client_secrets:
            return self.client_secrets[spn]
        return self.client_secret

    @classmethod
    def load(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the config file and the environment."""
        environ = os.environ if environ is None else environ

        values: Dict[str, Any] = {}
        path = environ.get(f"{ENV_PREFIX}CONFIG_FILE")
        if path:
            values.update(_load_file(path))

        for f in fields(cls):
            if f.name == "client_secrets":
                continue
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None and raw != "":
                values[f.name] = raw

        return cls(**_coerce(values))


def _load_file(path: str) -> Dict[str, Any]:
    try:
        with open(path) as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {path}: {sorted(unknown)}")

    client_secrets = data.get("client_secrets") or {}
    if not isinstance(client_secrets, dict):
        raise ConfigError("client_secrets must be a mapping of client id to secret")

    values = {k: v for k, v in data.items() if k in known}
    values["client_secrets"] = {str(k): str(v) for k, v in client_secrets.items()}
    logger.info(f"Loaded operator config from {path}")
    return values


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw string values to the types declared on Settings."""
    types = {f.name: f.type for f in fields(Settings)}
    out = {}
    for name, value in values.items():
        target = types.get(name)
        try:
            if target is int:
                value = int(value)
            elif target is float:
                value = float(value)
            elif value is not None and name != "client_secrets":
                value = str(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid value for {name}: {value!r}") from e
        if target in (int, float) and value < 0:
            raise ConfigError(f"{name} must not be negative")
        out[name] = value
    for name in ("workers", "resolver_attempts"):
        if out.get(name) == 0:
            raise ConfigError(f"{name} must be at least 1")
    if out.get("api_timeout_seconds") == 0:
        raise ConfigError("api_timeout_seconds must be positive")
    return out
