"""Reconciler state machine and worker pool for CDBootstrap resources.

One pass walks a resource key through::

    Pending -> ResolvingCredentials -> Building -> Applying -> Succeeded

and on error into Failing, from where it returns to Pending once its backoff
expires, or stops in Terminal when the error cannot be fixed by retrying.

Passes for one key never overlap: the work queue hands a key to a single
worker at a time. A pass that has not reached Applying is abandoned when a
newer event for its key is waiting.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from . import constants as C
from . import resources
from .applier import ClusterApplier
from .config import Settings
from .credentials import CredentialResolver
from .errors import TRANSPORT_ERRORS, ApiError, BootstrapError, InternalError, PassCancelled
from .models import BootstrapSpec, BootstrapStatus, Phase, ReconcileState
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


def backoff(attempt: int, base: float, cap: float) -> float:
    """Capped exponential delay before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(cap, base * (2 ** (attempt - 1)))


def split_key(key: str):
    namespace, _, name = key.partition("/")
    return namespace, name


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


class Reconciler:
    """Drives one reconciliation pass per call to ``reconcile``.

    Holds the per-key ``ReconcileState`` table; nothing else in the process
    keeps state about a resource.
    """

    def __init__(
        self,
        clients: Dict[str, Any],
        settings: Settings,
        resolver: CredentialResolver,
        applier: ClusterApplier,
        queue: WorkQueue,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.custom = clients["custom"]
        self.settings = settings
        self.resolver = resolver
        self.applier = applier
        self.queue = queue
        self._clock = clock
        self._states: Dict[str, ReconcileState] = {}
        self._states_lock = threading.Lock()

    def state(self, key: str) -> ReconcileState:
        with self._states_lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = ReconcileState()
            return state

    def forget(self, key: str) -> None:
        with self._states_lock:
            self._states.pop(key, None)

    # -------------------------------------------------------------------------
    # Kubernetes I/O
    # -------------------------------------------------------------------------

    def _read_resource(self, key: str) -> Optional[Dict[str, Any]]:
        namespace, name = split_key(key)
        try:
            return self.custom.get_namespaced_custom_object(
                C.API_GROUP, C.API_VERSION, namespace, C.PLURAL, name,
                _request_timeout=self.settings.api_timeout_seconds,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ApiError.from_exception(e, f"reading {C.KIND} {key}") from None
        except TRANSPORT_ERRORS as e:
            raise ApiError.from_transport_error(e, f"reading {C.KIND} {key}") from None

    def _write_status(
        self,
        key: str,
        status: BootstrapStatus,
        current: Optional[BootstrapStatus] = None,
    ) -> bool:
        """Patch the status subresource. Returns False when the write failed."""
        if status == current:
            logger.debug(f"Status of {key} is already up to date")
            return True
        namespace, name = split_key(key)
        try:
            self.custom.patch_namespaced_custom_object_status(
                C.API_GROUP, C.API_VERSION, namespace, C.PLURAL, name,
                {"status": status.to_dict()},
                _request_timeout=self.settings.api_timeout_seconds,
            )
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{C.KIND} {key} disappeared before its status was written")
                return True
            logger.warning(f"Failed to write status for {key}: {e.status} {e.reason}")
            return False
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Failed to write status for {key}: {type(e).__name__}: {e}")
            return False

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _enter(self, key: str, state: ReconcileState, phase: Phase) -> None:
        logger.debug(f"{key}: {state.phase.value} -> {phase.value}")
        state.phase = phase

    def _checkpoint(self, key: str) -> None:
        if self.queue.superseded(key):
            raise PassCancelled(key)

    def reconcile(self, key: str) -> ReconcileState:
        """Run one reconciliation pass for ``key``."""
        state = self.state(key)
        if state.phase.in_flight:
            logger.warning(f"{key}: previous pass was interrupted in {state.phase.value}")
        self._enter(key, state, Phase.PENDING)

        try:
            body = self._read_resource(key)
        except ApiError as e:
            return self._fail(key, state, e, generation=state.generation)
        if body is None:
            logger.info(f"{C.KIND} {key} no longer exists, forgetting it")
            self.forget(key)
            return state

        generation = (body.get("metadata") or {}).get("generation")
        current = BootstrapStatus.from_dict(body.get("status"))
        if state.generation is not None and generation != state.generation:
            # A spec edit may fix whatever failed before
            state.attempts = 0
        state.generation = generation

        try:
            spec = BootstrapSpec.from_resource(body, self.settings)
            self._checkpoint(key)

            self._enter(key, state, Phase.RESOLVING_CREDENTIALS)
            creds = self.resolver.resolve(
                spec.tenant_id,
                spec.service_principal_name,
                spec.vault_name,
                C.CREDENTIAL_KEYS,
                object_id=spec.object_id,
            )
            self._checkpoint(key)

            self._enter(key, state, Phase.BUILDING)
            desired = resources.build(spec, creds, self.settings)
            del creds
            self._checkpoint(key)

            self._enter(key, state, Phase.APPLYING)
            result = self.applier.apply(desired, resources.build_owner_reference(body))
        except PassCancelled:
            logger.info(f"{key}: newer event queued, abandoning pass in {state.phase.value}")
            self._enter(key, state, Phase.PENDING)
            return state
        except BootstrapError as e:
            return self._fail(key, state, e, generation=generation, current=current)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            return self._fail(key, state, InternalError(str(e)), generation=generation, current=current)

        if result.changed:
            logger.info(
                f"{key}: applied (secret {result.secret}, deployment {result.deployment})"
            )
        else:
            logger.debug(f"{key}: cluster already matches the desired state")
        return self._succeed(key, state, result.content_hash, generation, current)

    def _succeed(
        self,
        key: str,
        state: ReconcileState,
        content_hash: str,
        generation,
        current: Optional[BootstrapStatus] = None,
    ) -> ReconcileState:
        status = BootstrapStatus(
            succeeded=True,
            last_error=None,
            observed_generation=generation or 0,
            phase=Phase.SUCCEEDED.value,
        )
        if not self._write_status(key, status, current):
            return self._schedule_retry(key, state, "status update failed")

        if state.content_hash is not None and state.content_hash != content_hash:
            logger.info(f"{key}: desired state changed ({state.content_hash[:12]} -> {content_hash[:12]})")
        self._enter(key, state, Phase.SUCCEEDED)
        state.attempts = 0
        state.next_retry_at = None
        state.last_error = None
        state.content_hash = content_hash
        return state

    def _fail(
        self,
        key: str,
        state: ReconcileState,
        error: BootstrapError,
        generation,
        current: Optional[BootstrapStatus] = None,
    ) -> ReconcileState:
        self._enter(key, state, Phase.FAILING)
        message = str(error)[:C.MAX_STATUS_MESSAGE]
        state.last_error = message

        terminal = not error.retryable
        status = BootstrapStatus(
            succeeded=False,
            last_error=message,
            observed_generation=generation or 0,
            phase=(Phase.TERMINAL if terminal else Phase.FAILING).value,
        )
        written = self._write_status(key, status, current)

        if terminal:
            logger.error(f"{key}: {message} (not retrying until the resource changes)")
            state.next_retry_at = None
            self._enter(key, state, Phase.TERMINAL)
            if not written:
                # The failure must become visible on the resource
                return self._schedule_retry(key, state, "status update failed")
            state.attempts += 1
            return state

        return self._schedule_retry(key, state, message)

    def _schedule_retry(self, key: str, state: ReconcileState, reason: str) -> ReconcileState:
        state.attempts += 1
        delay = backoff(state.attempts, self.settings.backoff_base_seconds, self.settings.backoff_max_seconds)
        state.next_retry_at = self._clock() + delay
        if state.phase != Phase.TERMINAL:
            self._enter(key, state, Phase.FAILING)
        logger.warning(f"{key}: {reason}; retry {state.attempts} in {delay:.0f}s")
        self.queue.add_after(key, delay)
        return state


class Controller:
    """Pool of worker threads draining the work queue into the reconciler."""

    def __init__(self, reconciler: Reconciler, queue: WorkQueue, workers: int = 1):
        self.reconciler = reconciler
        self.queue = queue
        self.workers = workers
        self._threads: List[threading.Thread] = []

    def enqueue(self, namespace: str, name: str, generation: Optional[int] = None) -> bool:
        return self.queue.add(make_key(namespace, name), generation)

    def forget(self, namespace: str, name: str) -> None:
        key = make_key(namespace, name)
        self.queue.forget(key)
        self.reconciler.forget(key)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Process one key. Returns False when nothing was available."""
        item = self.queue.get(timeout=timeout)
        if item is None:
            return False
        key, _ = item
        try:
            self.reconciler.reconcile(key)
        except Exception as e:
            # A single resource must never take a worker down
            logger.error(f"Worker failed on {key}: {e}", exc_info=True)
        finally:
            self.queue.done(key)
        return True

    def _run(self) -> None:
        while self.process_next():
            pass

    def start(self) -> None:
        for i in range(self.workers):
            thread = threading.Thread(target=self._run, name=f"cdb-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {self.workers} reconcile workers")

    def stop(self, timeout: float = 10.0) -> None:
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Reconcile workers stopped")
