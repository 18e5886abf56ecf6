"""Shared pytest fixtures for cdbootstrap-operator tests.

- clock: manually advanced time source
- settings: Settings with cluster defaults and fast retries
- kube: in-memory stand-in for the CoreV1/AppsV1/CustomObjects APIs,
  with injectable API and connection failures
- vault: in-memory identity provider + vault
- controller: Controller wired to the fakes above
"""

import copy
import threading
import time
from types import SimpleNamespace

import pytest
from azure.core.credentials import AccessToken
from azure.core.exceptions import ResourceNotFoundError
from kubernetes.client.rest import ApiException

from cdbootstrap_operator import constants as C
from cdbootstrap_operator.applier import ClusterApplier
from cdbootstrap_operator.config import Settings
from cdbootstrap_operator.credentials import CredentialResolver
from cdbootstrap_operator.reconciler import Controller, Reconciler
from cdbootstrap_operator.workqueue import WorkQueue

NAMESPACE = "default"
NAME = "test-bootstrap"
KEY = f"{NAMESPACE}/{NAME}"
EPOCH = 1_700_000_000.0


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        default_tenant="t-default",
        default_spn="sp-default",
        default_keyvault="kv-default",
        client_secret="client-secret",
        workers=1,
        backoff_base_seconds=5.0,
        backoff_max_seconds=60.0,
        resolver_attempts=3,
        resolver_backoff_seconds=0.0,
        token_skew_seconds=60.0,
        api_timeout_seconds=12.0,
    )


# ============================================================================
# Kubernetes API
# ============================================================================

def _merge(target: dict, patch: dict) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeKube:
    """Minimal in-memory API server for Secrets, Deployments and CDBootstraps."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.conflicts = {}
        self.failures = {}
        self.status_failures = 0
        self.transport_failures = {}
        self.timeouts = []
        self._version = 0

    # -- helpers ---------------------------------------------------------------

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _maybe_fail(self, verb: str, kind: str):
        error = self.transport_failures.pop((verb, kind), None)
        if error is not None:
            raise error
        failures = self.failures.get((verb, kind))
        if failures:
            self.failures[(verb, kind)] = failures - 1
            raise ApiException(status=500, reason="Internal Server Error")

    def _read(self, kind, name, namespace):
        self.calls.append(("read", kind, name))
        self._maybe_fail("read", kind)
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def _create(self, kind, namespace, body):
        self.calls.append(("create", kind, body["metadata"]["name"]))
        self._maybe_fail("create", kind)
        key = (kind, namespace, body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = self._next_version()
        obj["metadata"]["uid"] = f"uid-{kind}-{obj['metadata']['name']}"
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def _patch(self, kind, name, namespace, body):
        self.calls.append(("patch", kind, name))
        self._maybe_fail("patch", kind)
        key = (kind, namespace, name)
        obj = self.objects.get(key)
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        if self.conflicts.get(kind):
            self.conflicts[kind] -= 1
            obj["metadata"]["resourceVersion"] = self._next_version()
            raise ApiException(status=409, reason="Conflict")
        expected = body.get("metadata", {}).get("resourceVersion")
        if expected is not None and expected != obj["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        patch = copy.deepcopy(body)
        patch["metadata"].pop("resourceVersion", None)
        _merge(obj, patch)
        obj["metadata"]["resourceVersion"] = self._next_version()
        return copy.deepcopy(obj)

    def writes(self, kind=None):
        return [
            call for call in self.calls
            if call[0] in ("create", "patch") and (kind is None or call[1] == kind)
        ]

    def get(self, kind, name=NAME, namespace=NAMESPACE):
        return self.objects.get((kind, namespace, name))

    # -- CoreV1Api -------------------------------------------------------------

    def read_namespaced_secret(self, name, namespace, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._read("Secret", name, namespace)

    def create_namespaced_secret(self, namespace, body, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._create("Secret", namespace, body)

    def patch_namespaced_secret(self, name, namespace, body, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._patch("Secret", name, namespace, body)

    # -- AppsV1Api -------------------------------------------------------------

    def read_namespaced_deployment(self, name, namespace, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._read("Deployment", name, namespace)

    def create_namespaced_deployment(self, namespace, body, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._create("Deployment", namespace, body)

    def patch_namespaced_deployment(self, name, namespace, body, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        return self._patch("Deployment", name, namespace, body)

    # -- CustomObjectsApi ------------------------------------------------------

    def add_cdbootstrap(self, spec, name=NAME, namespace=NAMESPACE, generation=1):
        self.objects[(C.KIND, namespace, name)] = {
            "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
            "kind": C.KIND,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "generation": generation,
                "resourceVersion": self._next_version(),
            },
            "spec": copy.deepcopy(spec),
        }

    def update_spec(self, changes, name=NAME, namespace=NAMESPACE):
        obj = self.objects[(C.KIND, namespace, name)]
        obj["spec"].update(changes)
        obj["metadata"]["generation"] += 1
        return obj["metadata"]["generation"]

    def status(self, name=NAME, namespace=NAMESPACE):
        return self.objects[(C.KIND, namespace, name)].get("status", {})

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, _request_timeout=None):
        self.timeouts.append(_request_timeout)
        assert (group, version, plural) == (C.API_GROUP, C.API_VERSION, C.PLURAL)
        return self._read(C.KIND, name, namespace)

    def patch_namespaced_custom_object_status(
        self, group, version, namespace, plural, name, body, _request_timeout=None
    ):
        self.calls.append(("patch_status", C.KIND, name))
        self.timeouts.append(_request_timeout)
        self._maybe_fail("patch_status", C.KIND)
        if self.status_failures:
            self.status_failures -= 1
            raise ApiException(status=500, reason="Internal Server Error")
        obj = self.objects.get((C.KIND, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        obj.setdefault("status", {})
        _merge(obj["status"], body["status"])
        return copy.deepcopy(obj)


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def clients(kube):
    return {"core": kube, "apps": kube, "custom": kube}


# ============================================================================
# Identity provider and vault
# ============================================================================

class FakeVault:
    """Identity provider and vault in one, counting every call."""

    def __init__(self, clock):
        self.clock = clock
        self.secrets = {}
        self.token_calls = 0
        self.fetches = []
        self.token_lifetime = 3600
        self.token_delay = 0.0
        self.get_token_error = None
        self.fetch_errors = []
        self.on_fetch = None
        self._lock = threading.Lock()

    def credential_factory(self, tenant_id, client_id, client_secret):
        vault = self

        class Credential:
            def get_token(self, *scopes, **kwargs):
                with vault._lock:
                    vault.token_calls += 1
                if vault.token_delay:
                    time.sleep(vault.token_delay)
                if vault.get_token_error is not None:
                    raise vault.get_token_error
                return AccessToken(f"token-{tenant_id}-{client_id}", int(vault.clock() + vault.token_lifetime))

        return Credential()

    def client_factory(self, url, credential):
        vault = self

        class Client:
            def get_secret(self, name):
                vault.fetches.append((url, name))
                if vault.on_fetch is not None:
                    vault.on_fetch(name)
                if vault.fetch_errors:
                    raise vault.fetch_errors.pop(0)
                if name not in vault.secrets:
                    raise ResourceNotFoundError(message=f"Secret not found: {name}")
                return SimpleNamespace(name=name, value=vault.secrets[name])

        return Client()


@pytest.fixture
def vault(clock):
    vault = FakeVault(lambda: EPOCH + clock())
    vault.secrets = {"azp-token": "pat-value", "spn-secret": "spn-value"}
    return vault


@pytest.fixture
def resolver(settings, vault, clock):
    return CredentialResolver(
        settings,
        credential_factory=vault.credential_factory,
        client_factory=vault.client_factory,
        clock=lambda: EPOCH + clock(),
        sleep=lambda seconds: None,
    )


# ============================================================================
# Controller
# ============================================================================

@pytest.fixture
def queue(clock):
    return WorkQueue(clock=clock)


@pytest.fixture
def reconciler(clients, settings, resolver, queue, clock):
    applier = ClusterApplier(clients, request_timeout=settings.api_timeout_seconds)
    return Reconciler(clients, settings, resolver, applier, queue, clock=clock)


@pytest.fixture
def controller(reconciler, queue):
    return Controller(reconciler, queue, workers=1)


@pytest.fixture
def drain(controller):
    """Process queued keys until the queue is idle; return the pass count."""
    def _drain() -> int:
        passes = 0
        while controller.process_next(timeout=0):
            passes += 1
        return passes
    return _drain


@pytest.fixture
def base_spec():
    return {
        "replicas": 2,
        "pool": "default",
        "url": "https://dev.example/org",
        "keyvault": "kv1",
        "spn": "sp1",
        "tenant": "t1",
    }
