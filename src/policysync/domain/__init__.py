"""Policy domain types shared by the synchronizers."""

from policysync.domain.identity import (
    CONSTRAINT_TEMPLATE_GVK,
    CRD_GVK,
    DEPLOYMENT_GVK,
    EVENT_GVK,
    POLICY_GVK,
    WEBHOOK_CONFIGURATION_GVK,
    GroupVersionKind,
    ObjectIdentifier,
)
from policysync.domain.models import (
    ComplianceHistory,
    ComplianceState,
    DetailsPerTemplate,
    ObjectMeta,
    OwnerReference,
    Policy,
    PolicyDependency,
    PolicySpec,
    PolicyStatus,
    PolicyTemplate,
    RemediationAction,
    TemplateMeta,
    format_micro_time,
    format_time,
    parse_time,
)
from policysync.domain.raw_object import RawObject

__all__ = [
    "CONSTRAINT_TEMPLATE_GVK",
    "CRD_GVK",
    "DEPLOYMENT_GVK",
    "EVENT_GVK",
    "POLICY_GVK",
    "WEBHOOK_CONFIGURATION_GVK",
    "ComplianceHistory",
    "ComplianceState",
    "DetailsPerTemplate",
    "GroupVersionKind",
    "ObjectIdentifier",
    "ObjectMeta",
    "OwnerReference",
    "Policy",
    "PolicyDependency",
    "PolicySpec",
    "PolicyStatus",
    "PolicyTemplate",
    "RawObject",
    "RemediationAction",
    "TemplateMeta",
    "format_micro_time",
    "format_time",
    "parse_time",
]
