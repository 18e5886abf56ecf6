"""Idempotent create-or-patch of the desired Secret and Deployment."""

import copy
import logging
from typing import Any, Callable, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import constants as C
from .errors import TRANSPORT_ERRORS, ApiError
from .models import AppliedResult, DesiredObjectSet

logger = logging.getLogger(__name__)

CREATED = "created"
PATCHED = "patched"
UNCHANGED = "unchanged"

_serializer = client.ApiClient()


def to_dict(obj: Any) -> Optional[Dict[str, Any]]:
    """Normalize an API model object to its JSON (camelCase) form."""
    if obj is None or isinstance(obj, dict):
        return obj
    return _serializer.sanitize_for_serialization(obj)


def _annotation(obj: Dict[str, Any]) -> Optional[str]:
    return ((obj.get("metadata") or {}).get("annotations") or {}).get(C.ANNOTATION_CONTENT_HASH)


def _owned_by(obj: Dict[str, Any], owner_ref: Dict[str, Any]) -> bool:
    refs = (obj.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == owner_ref["uid"] for ref in refs)


def secret_matches(observed: Dict[str, Any], desired: Dict[str, Any], owner_ref: Dict[str, Any]) -> bool:
    """Observed Secret is equivalent to desired, server-populated fields aside."""
    return (
        _annotation(observed) == _annotation(desired)
        and (observed.get("data") or {}) == desired["data"]
        and _owned_by(observed, owner_ref)
    )


def _containers(obj: Dict[str, Any]) -> list:
    template = ((obj.get("spec") or {}).get("template") or {}).get("spec") or {}
    return template.get("containers") or []


def deployment_matches(observed: Dict[str, Any], desired: Dict[str, Any], owner_ref: Dict[str, Any]) -> bool:
    """Observed Deployment is equivalent to desired.

    The hash annotation covers what we last wrote; replicas and image are
    also compared so a manual scale or image edit gets reverted.
    """
    if _annotation(observed) != _annotation(desired) or not _owned_by(observed, owner_ref):
        return False
    if (observed.get("spec") or {}).get("replicas") != desired["spec"]["replicas"]:
        return False
    observed_images = [c.get("image") for c in _containers(observed)]
    desired_images = [c.get("image") for c in _containers(desired)]
    return observed_images == desired_images


class ClusterApplier:
    """Applies a DesiredObjectSet against the Kubernetes API.

    Never deletes anything: child objects carry an owner reference and are
    garbage collected with the CDBootstrap.
    """

    def __init__(self, clients: Dict[str, Any], request_timeout: Optional[float] = None):
        self.core = clients["core"]
        self.apps = clients["apps"]
        self.request_timeout = request_timeout

    def apply(self, desired: DesiredObjectSet, owner_ref: Dict[str, Any]) -> AppliedResult:
        secret_action = self._apply(
            desired.secret,
            owner_ref,
            read=self.core.read_namespaced_secret,
            create=self.core.create_namespaced_secret,
            patch=self.core.patch_namespaced_secret,
            matches=secret_matches,
        )
        deployment_action = self._apply(
            desired.deployment,
            owner_ref,
            read=self.apps.read_namespaced_deployment,
            create=self.apps.create_namespaced_deployment,
            patch=self.apps.patch_namespaced_deployment,
            matches=deployment_matches,
        )
        return AppliedResult(
            secret=secret_action,
            deployment=deployment_action,
            content_hash=desired.content_hash,
        )

    def _read(self, read: Callable, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        try:
            return to_dict(read(name, namespace, _request_timeout=self.request_timeout))
        except ApiException as e:
            if e.status == 404:
                return None
            raise ApiError.from_exception(e, f"reading {kind} {namespace}/{name}") from None
        except TRANSPORT_ERRORS as e:
            raise ApiError.from_transport_error(e, f"reading {kind} {namespace}/{name}") from None

    def _apply(
        self,
        manifest: Dict[str, Any],
        owner_ref: Dict[str, Any],
        read: Callable,
        create: Callable,
        patch: Callable,
        matches: Callable,
    ) -> str:
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        namespace = manifest["metadata"]["namespace"]

        body = copy.deepcopy(manifest)
        body["metadata"]["ownerReferences"] = [owner_ref]

        # One inline retry on optimistic concurrency conflicts, then surface
        for attempt in (1, 2):
            observed = self._read(read, kind, name, namespace)
            try:
                if observed is None:
                    logger.info(f"Creating {kind} {namespace}/{name}")
                    create(namespace, body, _request_timeout=self.request_timeout)
                    return CREATED

                if matches(observed, body, owner_ref):
                    logger.debug(f"{kind} {namespace}/{name} is up to date")
                    return UNCHANGED

                logger.info(f"Patching {kind} {namespace}/{name}")
                body["metadata"]["resourceVersion"] = observed["metadata"].get("resourceVersion")
                patch(name, namespace, body, _request_timeout=self.request_timeout)
                return PATCHED
            except ApiException as e:
                error = ApiError.from_exception(e, f"applying {kind} {namespace}/{name}")
                if error.conflict and attempt == 1:
                    logger.info(f"Conflict applying {kind} {namespace}/{name}, re-reading")
                    body["metadata"].pop("resourceVersion", None)
                    continue
                logger.error(f"Failed to apply {kind} {namespace}/{name}: {e.status} {e.reason}")
                raise error from None
            except TRANSPORT_ERRORS as e:
                logger.error(f"Failed to apply {kind} {namespace}/{name}: {e}")
                raise ApiError.from_transport_error(e, f"applying {kind} {namespace}/{name}") from None
