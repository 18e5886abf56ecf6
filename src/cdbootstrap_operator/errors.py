"""Error taxonomy for the reconciliation engine.

Every failure that reaches the reconciler is one of these. ``retryable``
drives the state machine: retryable errors schedule a backoff retry, the
rest park the resource until its spec (or the vault) changes.
"""

from typing import Optional

from urllib3.exceptions import HTTPError

# Raised by the kubernetes client when the API server cannot be reached
TRANSPORT_ERRORS = (HTTPError, OSError)


class BootstrapError(Exception):
    """Base class for all reconciliation errors."""

    kind = "Error"
    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class ConfigError(BootstrapError):
    """Malformed or incomplete spec. Retrying cannot fix it."""

    kind = "ConfigError"
    retryable = False


class AuthError(BootstrapError):
    """The identity provider rejected the service principal."""

    kind = "AuthError"


class VaultError(BootstrapError):
    """Fetching a secret from the vault failed."""

    kind = "VaultError"


class SecretNotFoundError(VaultError):
    """A named secret does not exist in the vault."""

    kind = "NotFound"
    retryable = False

    def __init__(self, key: str, secret_name: str, vault_name: str):
        super().__init__(
            f"secret {key} (vault secret '{secret_name}') not found in vault '{vault_name}'"
        )
        self.key = key
        self.secret_name = secret_name
        self.vault_name = vault_name


class ApiError(BootstrapError):
    """A Kubernetes API call failed."""

    kind = "ApiError"

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason

    @property
    def conflict(self) -> bool:
        return self.status == 409

    @classmethod
    def from_exception(cls, exc, action: str) -> "ApiError":
        """Wrap a kubernetes ``ApiException``."""
        status = getattr(exc, "status", None)
        reason = "Conflict" if status == 409 else getattr(exc, "reason", None)
        return cls(f"{action} failed: {status} {reason}", status=status, reason=reason)

    @classmethod
    def from_transport_error(cls, exc: Exception, action: str) -> "ApiError":
        """Wrap a connection-level failure (urllib3 error, timeout, socket error)."""
        reason = type(exc).__name__
        return cls(f"{action} failed: {reason}: {exc}", reason=reason)


class InternalError(BootstrapError):
    """Programmer-error class failure inside a pass."""

    kind = "InternalError"
    retryable = False


class PassCancelled(Exception):
    """Raised inside a pass when a newer event for the same key is queued."""
