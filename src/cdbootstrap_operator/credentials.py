"""Credential resolver: service principal -> bearer token -> vault secrets.

Tokens are cached per (tenant, service principal) until shortly before they
expire. Secret values are fetched on every call and never cached, logged or
serialized.
"""

import functools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from azure.core.credentials import AccessToken
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import ClientSecretCredential
from azure.keyvault.secrets import SecretClient

from . import constants as C
from .config import Settings
from .errors import AuthError, ConfigError, SecretNotFoundError, VaultError
from .models import ResolvedCredentials

logger = logging.getLogger(__name__)

TokenKey = Tuple[str, str]


def vault_url(vault_name: str) -> str:
    """Vault URL for a vault name. Full URLs are passed through."""
    if vault_name.startswith("https://"):
        return vault_name.rstrip("/")
    return C.VAULT_URL_TEMPLATE.format(vault_name=vault_name)


def vault_secret_name(key: str, object_id: Optional[str] = None) -> str:
    """Vault secret name for a credential key.

    Vault names allow only alphanumerics and dashes, so ``AZP_TOKEN`` is
    stored as ``azp-token``, or ``<oid>-azp-token`` when an object id is set.
    """
    name = key.lower().replace("_", "-")
    if object_id:
        return f"{object_id}-{name}"
    return name


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(exc, HttpResponseError):
        status = exc.status_code
        return status is None or status == 429 or status >= 500
    return False


class _CachedTokenCredential:
    """TokenCredential handing out an already acquired token."""

    def __init__(self, token: AccessToken):
        self._token = token

    def get_token(self, *scopes, **kwargs) -> AccessToken:
        return self._token


class CredentialResolver:
    """Resolves named secrets for a service principal.

    ``credential_factory`` and ``client_factory`` default to the Azure SDK
    and exist so tests can substitute fakes. ``clock`` returns epoch seconds,
    matching ``AccessToken.expires_on``.
    """

    def __init__(
        self,
        settings: Settings,
        credential_factory: Optional[Callable] = None,
        client_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        timeout = settings.api_timeout_seconds
        self._credential_factory = credential_factory or functools.partial(_default_credential, timeout=timeout)
        self._client_factory = client_factory or functools.partial(_default_client, timeout=timeout)
        self._clock = clock
        self._sleep = sleep

        self._tokens: Dict[TokenKey, AccessToken] = {}
        self._locks: Dict[TokenKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Token cache
    # -------------------------------------------------------------------------

    def _lock_for(self, key: TokenKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _token_valid(self, token: Optional[AccessToken]) -> bool:
        return token is not None and token.expires_on - self.settings.token_skew_seconds > self._clock()

    def get_token(self, tenant_id: str, client_id: str) -> AccessToken:
        """Bearer token for the vault, from cache when still fresh."""
        key = (tenant_id, client_id)
        with self._lock_for(key):
            token = self._tokens.get(key)
            if self._token_valid(token):
                return token

            client_secret = self.settings.client_secret_for(client_id)
            if not client_secret:
                raise ConfigError(f"no client secret configured for service principal {client_id}")

            logger.debug(f"Acquiring token for {client_id} in tenant {tenant_id}")
            credential = self._credential_factory(tenant_id, client_id, client_secret)
            token = self._retry(
                lambda: credential.get_token(C.VAULT_SCOPE),
                f"token acquisition for {client_id}",
                AuthError,
            )
            self._tokens[key] = token
            return token

    def invalidate(self, tenant_id: str, client_id: str) -> None:
        with self._lock_for((tenant_id, client_id)):
            self._tokens.pop((tenant_id, client_id), None)

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def resolve(
        self,
        tenant_id: str,
        service_principal_name: str,
        vault_name: str,
        secret_names: Iterable[str],
        object_id: Optional[str] = None,
    ) -> ResolvedCredentials:
        """Fetch every named secret from the vault.

        Raises AuthError, VaultError, SecretNotFoundError or ConfigError.
        """
        token = self.get_token(tenant_id, service_principal_name)
        client = self._client_factory(vault_url(vault_name), _CachedTokenCredential(token))

        values = {}
        for key in sorted(set(secret_names)):
            name = vault_secret_name(key, object_id)
            try:
                secret = self._retry(
                    lambda: client.get_secret(name),
                    f"fetching '{name}' from vault '{vault_name}'",
                    VaultError,
                )
            except AuthError:
                # A token rejected by the vault will not get better from the cache
                self.invalidate(tenant_id, service_principal_name)
                raise
            except ResourceNotFoundError:
                raise SecretNotFoundError(key, name, vault_name) from None
            if secret.value is None:
                raise SecretNotFoundError(key, name, vault_name)
            values[key] = secret.value

        logger.debug(f"Resolved {len(values)} secrets from vault {vault_name}")
        return ResolvedCredentials(values=values, expires_at=token.expires_on)

    def _retry(self, operation, description: str, error_cls: type):
        """Run ``operation`` with exponential backoff on transient failures.

        ResourceNotFoundError propagates untouched so the caller can name
        the missing secret.
        """
        attempts = self.settings.resolver_attempts
        delay = self.settings.resolver_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except ResourceNotFoundError:
                raise
            except ClientAuthenticationError as e:
                raise AuthError(f"{description} rejected: {e.message}") from None
            except (ServiceRequestError, ServiceResponseError, HttpResponseError) as e:
                if not _is_transient(e):
                    raise error_cls(f"{description} failed: {e.message}") from None
                if attempt == attempts:
                    raise error_cls(
                        f"{description} failed after {attempts} attempts: {e.message}"
                    ) from None
                logger.warning(
                    f"Transient error in {description} (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delay *= 2


def _default_credential(tenant_id: str, client_id: str, client_secret: str, timeout: float):
    return ClientSecretCredential(
        tenant_id,
        client_id,
        client_secret,
        connection_timeout=timeout,
        read_timeout=timeout,
    )


def _default_client(url: str, credential, timeout: float) -> SecretClient:
    # Retries are handled by CredentialResolver._retry
    return SecretClient(
        vault_url=url,
        credential=credential,
        retry_total=0,
        connection_timeout=timeout,
        read_timeout=timeout,
    )


