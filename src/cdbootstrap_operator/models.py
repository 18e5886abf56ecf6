"""Data model for CDBootstrap reconciliation."""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import constants as C
from .config import Settings
from .errors import ConfigError


class Phase(str, enum.Enum):
    """Reconciler state machine phases."""

    PENDING = "Pending"
    RESOLVING_CREDENTIALS = "ResolvingCredentials"
    BUILDING = "Building"
    APPLYING = "Applying"
    SUCCEEDED = "Succeeded"
    FAILING = "Failing"
    TERMINAL = "Terminal"

    @property
    def in_flight(self) -> bool:
        return self in (Phase.RESOLVING_CREDENTIALS, Phase.BUILDING, Phase.APPLYING)


@dataclass(frozen=True)
class BootstrapSpec:
    """Spec of one CDBootstrap, with cluster defaults filled in."""

    name: str
    namespace: str
    replicas: int
    devops_url: str
    agent_pool: str
    vault_name: str
    service_principal_name: str
    tenant_id: str
    object_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_resource(cls, body: Dict[str, Any], settings: Settings) -> "BootstrapSpec":
        """Parse a CDBootstrap body, applying defaults for optional fields.

        Raises ConfigError when a required field is missing or malformed.
        """
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            raise ConfigError("resource has no name or namespace")

        replicas = spec.get("replicas")
        if isinstance(replicas, bool) or not isinstance(replicas, int):
            raise ConfigError(f"spec.replicas must be an integer, got {replicas!r}")
        if replicas < 0:
            raise ConfigError(f"spec.replicas must be >= 0, got {replicas}")

        for required in ("url", "pool"):
            if not spec.get(required):
                raise ConfigError(f"spec.{required} is required")

        defaults = {
            "keyvault": settings.default_keyvault,
            "spn": settings.default_spn,
            "tenant": settings.default_tenant,
        }
        resolved = {}
        for field_name, default in defaults.items():
            value = spec.get(field_name) or default
            if not value:
                raise ConfigError(
                    f"spec.{field_name} is not set and no cluster default is configured"
                )
            resolved[field_name] = value

        return cls(
            name=name,
            namespace=namespace,
            replicas=replicas,
            devops_url=spec["url"],
            agent_pool=spec["pool"],
            vault_name=resolved["keyvault"],
            service_principal_name=resolved["spn"],
            tenant_id=resolved["tenant"],
            object_id=spec.get("oid") or settings.default_oid,
        )


@dataclass
class BootstrapStatus:
    """Status written back onto the custom resource."""

    succeeded: bool = False
    last_error: Optional[str] = None
    observed_generation: int = 0
    phase: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            # None clears the field under a merge patch
            "lastError": self.last_error,
            "observedGeneration": self.observed_generation,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BootstrapStatus":
        data = data or {}
        return cls(
            succeeded=bool(data.get("succeeded", False)),
            last_error=data.get("lastError"),
            observed_generation=int(data.get("observedGeneration") or 0),
            phase=data.get("phase"),
        )


@dataclass(frozen=True)
class ResolvedCredentials:
    """Secret values for one pass. Never logged, never persisted."""

    values: Dict[str, str] = field(repr=False)
    expires_at: float = 0.0

    @property
    def agent_token(self) -> str:
        return self.values[C.AZP_TOKEN]

    @property
    def service_principal_secret(self) -> str:
        return self.values[C.SPN_SECRET]

    def keys(self):
        return sorted(self.values)


@dataclass(frozen=True)
class DesiredObjectSet:
    """Target Secret and Deployment for one CDBootstrap."""

    secret: Dict[str, Any]
    deployment: Dict[str, Any]
    content_hash: str
    secret_hash: str
    deployment_hash: str


@dataclass(frozen=True)
class AppliedResult:
    """Outcome of applying a DesiredObjectSet."""

    secret: str
    deployment: str
    content_hash: str

    @property
    def changed(self) -> bool:
        return self.secret != "unchanged" or self.deployment != "unchanged"


@dataclass
class ReconcileState:
    """In-memory bookkeeping for one resource key."""

    phase: Phase = Phase.PENDING
    attempts: int = 0
    next_retry_at: Optional[float] = None
    generation: Optional[int] = None
    last_error: Optional[str] = None
    content_hash: Optional[str] = None
