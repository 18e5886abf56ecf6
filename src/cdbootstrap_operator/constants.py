"""Default values and constants for cdbootstrap-operator."""

import os

# API Group and Version
API_GROUP = "cndev.nl"
API_VERSION = "v1beta1"
PLURAL = "cdbootstraps"
KIND = "CDBootstrap"

# Operator name
OPERATOR_NAME = "cdbootstrap-operator"

# =============================================================================
# Agent Image (configurable via environment variables)
# =============================================================================

DEFAULT_AGENT_IMAGE = os.getenv(
    "CDB_AGENT_IMAGE",
    "ghcr.io/bartvanbenthem/azp-agent-alpine:latest"
)
DEFAULT_AGENT_PULL_POLICY = os.getenv("CDB_AGENT_PULL_POLICY", "IfNotPresent")

AGENT_CONTAINER_NAME = "azp-agent"

# =============================================================================
# Credential keys
# =============================================================================

# Keys of the managed Secret, also the env var names inside the agent pod
AZP_TOKEN = "AZP_TOKEN"
SPN_SECRET = "SPN_SECRET"
CREDENTIAL_KEYS = (AZP_TOKEN, SPN_SECRET)

# Plain env vars carried on the Deployment
ENV_AZP_URL = "AZP_URL"
ENV_AZP_POOL = "AZP_POOL"
ENV_AZP_AGENT_NAME = "AZP_AGENT_NAME"

# Token scope for the vault
VAULT_SCOPE = "https://vault.azure.net/.default"
VAULT_URL_TEMPLATE = "https://{vault_name}.vault.azure.net"

# =============================================================================
# Labels and annotations
# =============================================================================

LABEL_APP = "app"
LABEL_NAME = "app.kubernetes.io/name"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_COMPONENT = "app.kubernetes.io/component"

ANNOTATION_CONTENT_HASH = f"{API_GROUP}/content-hash"

# =============================================================================
# Status
# =============================================================================

MAX_STATUS_MESSAGE = 512

# =============================================================================
# Control loop
# =============================================================================

DEFAULT_RESYNC_SECONDS = float(os.getenv("CDB_RESYNC_SECONDS", "300"))
WATCH_NAMESPACE = os.getenv("CDB_WATCH_NAMESPACE", "")
