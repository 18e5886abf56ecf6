"""Resource builders for CDBootstrap managed resources.

Pure functions: no I/O, deterministic output. The builders return plain
manifests; the applier is the only place they meet the API client.
"""

import base64
import hashlib
import json
from typing import Any, Dict, Iterable

from . import constants as C
from .config import Settings
from .errors import ConfigError, InternalError
from .models import BootstrapSpec, DesiredObjectSet, ResolvedCredentials


def build_labels(name: str, component: str) -> Dict[str, str]:
    """Build standard labels for a resource."""
    return {
        C.LABEL_APP: name,
        C.LABEL_NAME: name,
        C.LABEL_INSTANCE: name,
        C.LABEL_COMPONENT: component,
        C.LABEL_MANAGED_BY: C.OPERATOR_NAME,
    }


def build_selector(name: str) -> Dict[str, str]:
    return {C.LABEL_APP: name}


def build_owner_reference(owner: Dict[str, Any]) -> Dict[str, Any]:
    """Build owner reference for garbage collection."""
    return {
        "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
        "kind": C.KIND,
        "name": owner["metadata"]["name"],
        "uid": owner["metadata"]["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def content_hash(payload: Any) -> str:
    """Stable digest of a JSON-serializable payload."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def validate_spec(spec: BootstrapSpec) -> None:
    """Re-check the invariants the API server schema should already enforce."""
    if isinstance(spec.replicas, bool) or not isinstance(spec.replicas, int) or spec.replicas < 0:
        raise ConfigError(f"replicas must be a non-negative integer, got {spec.replicas!r}")
    if not spec.devops_url:
        raise ConfigError("url must not be empty")
    if not spec.agent_pool:
        raise ConfigError("pool must not be empty")


def build_secret(spec: BootstrapSpec, creds: ResolvedCredentials) -> Dict[str, Any]:
    """Build the Secret holding one key per credential."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": spec.name,
            "namespace": spec.namespace,
            "labels": build_labels(spec.name, "credentials"),
        },
        "type": "Opaque",
        "data": {key: _encode(creds.values[key]) for key in sorted(creds.values)},
    }


def _secret_env(secret_name: str, key: str) -> Dict[str, Any]:
    return {
        "name": key,
        "valueFrom": {
            "secretKeyRef": {
                "name": secret_name,
                "key": key,
            }
        },
    }


def build_deployment(
    spec: BootstrapSpec,
    secret_keys: Iterable[str],
    settings: Settings,
) -> Dict[str, Any]:
    """Build Deployment running the pipeline agents.

    Credentials reach the pods only as env vars resolved from the Secret.
    """
    env = [
        {"name": C.ENV_AZP_URL, "value": spec.devops_url},
        {"name": C.ENV_AZP_POOL, "value": spec.agent_pool},
        {
            "name": C.ENV_AZP_AGENT_NAME,
            "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}},
        },
    ]
    env.extend(_secret_env(spec.name, key) for key in sorted(secret_keys))

    labels = build_labels(spec.name, "agent")
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": spec.name,
            "namespace": spec.namespace,
            "labels": labels,
        },
        "spec": {
            "replicas": spec.replicas,
            "selector": {"matchLabels": build_selector(spec.name)},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [{
                        "name": C.AGENT_CONTAINER_NAME,
                        "image": settings.agent_image,
                        "imagePullPolicy": settings.agent_pull_policy,
                        "env": env,
                    }],
                },
            },
        },
    }


def secret_fingerprint(secret: Dict[str, Any]) -> Dict[str, Any]:
    """The parts of a Secret that feed its hash. Values are left out."""
    return {
        "name": secret["metadata"]["name"],
        "namespace": secret["metadata"]["namespace"],
        "labels": secret["metadata"]["labels"],
        "type": secret["type"],
        "keys": sorted(secret["data"]),
    }


def _annotate(manifest: Dict[str, Any], digest: str) -> None:
    manifest["metadata"]["annotations"] = {C.ANNOTATION_CONTENT_HASH: digest}


def build(spec: BootstrapSpec, creds: ResolvedCredentials, settings: Settings) -> DesiredObjectSet:
    """Map a spec and its credentials to the desired Secret and Deployment."""
    validate_spec(spec)
    missing = [key for key in C.CREDENTIAL_KEYS if key not in creds.values]
    if missing:
        raise InternalError(f"credentials missing for {', '.join(missing)}")

    secret = build_secret(spec, creds)
    deployment = build_deployment(spec, secret["data"].keys(), settings)

    secret_hash = content_hash(secret_fingerprint(secret))
    deployment_hash = content_hash(deployment)
    _annotate(secret, secret_hash)
    _annotate(deployment, deployment_hash)

    return DesiredObjectSet(
        secret=secret,
        deployment=deployment,
        content_hash=content_hash({"secret": secret_hash, "deployment": deployment_hash}),
        secret_hash=secret_hash,
        deployment_hash=deployment_hash,
    )
