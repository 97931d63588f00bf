"""Group, label, annotation and finalizer names shared by every controller."""

from __future__ import annotations

API_GROUP = "policy.open-cluster-management.io"
POLICY_VERSION = "v1"
POLICY_KIND = "Policy"
POLICY_API_VERSION = f"{API_GROUP}/{POLICY_VERSION}"

PARENT_POLICY_LABEL = f"{API_GROUP}/policy"
POLICY_TYPE_LABEL = f"{API_GROUP}/policy-type"
CLUSTER_NAME_LABEL = f"{API_GROUP}/cluster-name"
CLUSTER_NAMESPACE_LABEL = f"{API_GROUP}/cluster-namespace"
LEGACY_CLUSTER_NAME_LABEL = "cluster-name"
LEGACY_CLUSTER_NAMESPACE_LABEL = "cluster-namespace"

CLUSTERWIDE_FINALIZER = f"{API_GROUP}/cleanup-cluster-scoped-policies"
UNINSTALL_ANNOTATION = f"{API_GROUP}/uninstalling"

POLICY_DB_ID_ANNOTATION = f"{API_GROUP}/policy-compliance-db-id"
PARENT_DB_ID_ANNOTATION = f"{API_GROUP}/parent-policy-compliance-db-id"

GATEKEEPER_CONSTRAINT_GROUP = "constraints.gatekeeper.sh"
GATEKEEPER_TEMPLATE_GROUP = "templates.gatekeeper.sh"
CONSTRAINT_TEMPLATE_KIND = "ConstraintTemplate"
GATEKEEPER_WEBHOOK_NAME = "gatekeeper-validating-webhook-configuration"
GATEKEEPER_WEBHOOK_ENTRY = "validation.gatekeeper.sh"

CONFIGURATION_POLICY_KIND = "ConfigurationPolicy"

# Every template status history is capped at this many entries.
HISTORY_LIMIT = 10

# Longest status message accepted by the event sink, in characters.
MAX_EVENT_MESSAGE_LENGTH = 1024
