"""Main Kopf operator for CDBootstrap resources.

Kopf owns the watch stream; its handlers only feed resource keys into the
work queue. Reconciliation itself happens on the controller's worker pool.
Handlers return nothing so kopf never writes into the status the reconciler
owns.
"""

import logging
import os
from typing import Any, Dict, Optional

import kopf
import kubernetes
from kubernetes import client

from . import constants as C
from .applier import ClusterApplier
from .config import Settings
from .credentials import CredentialResolver
from .reconciler import Controller, Reconciler
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


def get_k8s_clients() -> Dict[str, Any]:
    """Get Kubernetes API clients."""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()

    return {
        "core": client.CoreV1Api(),
        "apps": client.AppsV1Api(),
        "custom": client.CustomObjectsApi(),
    }


def build_controller(
    settings: Settings,
    clients: Optional[Dict[str, Any]] = None,
    resolver: Optional[CredentialResolver] = None,
) -> Controller:
    """Wire queue, resolver, applier and reconciler into a controller."""
    clients = clients or get_k8s_clients()
    queue = WorkQueue()
    reconciler = Reconciler(
        clients,
        settings,
        resolver or CredentialResolver(settings),
        ClusterApplier(clients, request_timeout=settings.api_timeout_seconds),
        queue,
    )
    return Controller(reconciler, queue, workers=settings.workers)


# ============================================================================
# Lifecycle
# ============================================================================

@kopf.on.startup()
def start_controller(memo: kopf.Memo, **kwargs):
    """Load configuration and start the reconcile workers."""
    settings = Settings.load()
    logger.info(
        f"Starting {C.OPERATOR_NAME} with {settings.workers} workers, "
        f"resync every {C.DEFAULT_RESYNC_SECONDS:.0f}s"
    )
    controller = build_controller(settings)
    controller.start()
    memo.controller = controller


@kopf.on.cleanup()
def stop_controller(memo: kopf.Memo, **kwargs):
    controller = getattr(memo, "controller", None)
    if controller is not None:
        controller.stop()


# ============================================================================
# CDBootstrap Handlers
# ============================================================================

@kopf.on.resume(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.create(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.update(C.API_GROUP, C.API_VERSION, C.PLURAL)
def enqueue_cdbootstrap(name, namespace, meta, memo: kopf.Memo, **kwargs):
    """Queue a CDBootstrap for reconciliation."""
    generation = meta.get("generation")
    if memo.controller.enqueue(namespace, name, generation):
        logger.debug(f"Queued CDBootstrap {namespace}/{name} (generation {generation})")


@kopf.timer(C.API_GROUP, C.API_VERSION, C.PLURAL, interval=C.DEFAULT_RESYNC_SECONDS)
def resync_cdbootstrap(name, namespace, meta, memo: kopf.Memo, **kwargs):
    """Periodic resync, picks up vault changes and drift."""
    memo.controller.enqueue(namespace, name, meta.get("generation"))


@kopf.on.delete(C.API_GROUP, C.API_VERSION, C.PLURAL, optional=True)
def delete_cdbootstrap(name, namespace, memo: kopf.Memo, **kwargs):
    """Handle CDBootstrap deletion.

    The Secret and Deployment are cleaned up automatically via ownerReferences.
    """
    memo.controller.forget(namespace, name)
    logger.info(f"CDBootstrap {namespace}/{name} deleted - resources will be garbage collected")


def main():
    """Entry point for the operator."""
    logging.basicConfig(
        level=os.getenv("CDB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    # Kopf takes over from here
    if C.WATCH_NAMESPACE:
        kopf.run(namespaces=[C.WATCH_NAMESPACE])
    else:
        kopf.run(clusterwide=True)


if __name__ == "__main__":
    main()
