"""Pure helpers used by the template synchronizer."""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from typing import Any

from policysync.core.errors import TemplateDecodeError
from policysync.domain.constants import (
    CLUSTER_NAME_LABEL,
    CLUSTER_NAMESPACE_LABEL,
    CONFIGURATION_POLICY_KIND,
    CONSTRAINT_TEMPLATE_KIND,
    GATEKEEPER_CONSTRAINT_GROUP,
    GATEKEEPER_TEMPLATE_GROUP,
    LEGACY_CLUSTER_NAME_LABEL,
    LEGACY_CLUSTER_NAMESPACE_LABEL,
    PARENT_POLICY_LABEL,
)
from policysync.domain.identity import GroupVersionKind
from policysync.domain.models import Policy, RemediationAction
from policysync.domain.raw_object import RawObject

DUPLICATE_NAMES_MESSAGE = (
    "There are duplicate names in configurationpolicies, please check the policy"
)
HUB_TEMPLATE_MARKER = "{{hub "

_ONE_OF_PATTERN = re.compile(
    r'spec" must validate one and only one schema \(oneOf\)\. Found 2 valid alternatives$'
)


def synthetic_name(index: int) -> str:
    return f"template-{index}"


def is_constraint_template(gvk: GroupVersionKind) -> bool:
    return gvk.group == GATEKEEPER_TEMPLATE_GROUP and gvk.kind == CONSTRAINT_TEMPLATE_KIND


def is_constraint(gvk: GroupVersionKind) -> bool:
    return gvk.group == GATEKEEPER_CONSTRAINT_GROUP


def is_gatekeeper_object(gvk: GroupVersionKind) -> bool:
    return is_constraint_template(gvk) or is_constraint(gvk)


def is_allowed_kind(gvk: GroupVersionKind) -> bool:
    """Kinds synchronised even when their CRD lacks the policy-type=template label."""
    return is_gatekeeper_object(gvk)


def has_duplicate_names(policy: Policy) -> bool:
    """
    Whether two templates of the policy share a name.

    An undecodable template stops the check; it is reported on its own
    later in the pass.
    """
    seen: set[str] = set()
    for template in policy.templates:
        definition = template.object_definition
        if not isinstance(definition, Mapping):
            return False
        name = str((definition.get("metadata") or {}).get("name") or "")
        if name in seen:
            return True
        seen.add(name)
    return False


def decode_error_message(error: TemplateDecodeError) -> str:
    return f"Failed to decode policy template with err: {error.message}"


def mapping_error_message(
    gvk: GroupVersionKind, error: BaseException, *, gatekeeper_disabled: bool = False
) -> str:
    if gatekeeper_disabled and is_gatekeeper_object(gvk):
        message = (
            "A Gatekeeper policy-template was provided, "
            "but the Gatekeeper integration is disabled"
        )
    elif is_constraint_template(gvk):
        message = "Mapping not found, check if Gatekeeper is installed"
    elif is_constraint(gvk):
        message = "Mapping not found, check if the required ConstraintTemplate has been deployed"
    else:
        message = "Mapping not found, check if you have the CRD deployed"
    return f"{message}: {error}"


def unsupported_kind_message(gvk: GroupVersionKind, *, gatekeeper_disabled: bool = False) -> str:
    if gatekeeper_disabled and is_gatekeeper_object(gvk):
        return f"not syncing kind {gvk} because the Gatekeeper integration is disabled"
    return f"policy-template kind is not supported: {gvk}"


def uses_hub_templates(template: RawObject) -> bool:
    """Hub templating is resolved on the hub; only ConfigurationPolicy may still carry it."""
    if template.kind == CONFIGURATION_POLICY_KIND:
        return False
    return template.contains_text(HUB_TEMPLATE_MARKER)


def create_error_message(name: str, error: BaseException) -> str:
    text = str(error)
    if _ONE_OF_PATTERN.search(text):
        text = (
            f'{CONFIGURATION_POLICY_KIND}.policy.open-cluster-management.io "{name}" is invalid: '
            "spec may only contain one of object-templates and object-templates-raw"
        )
    return f"Failed to create policy template: {text}"


def naming_conflict_message(kind: str, name: str, owner: str) -> str:
    if not owner:
        return (
            "Template name must be unique. Policy template with "
            f"kind: {kind} name: {name} already exists outside of a Policy"
        )
    return (
        "Template name must be unique. Policy template with "
        f"kind: {kind} name: {name} already exists in policy {owner}"
    )


def template_labels(
    policy: Policy, cluster_namespace: str, labels: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Merge the labels every synchronised child carries."""
    merged = dict(labels or {})
    cluster_name = policy.metadata.labels.get(CLUSTER_NAME_LABEL, "")
    merged.update(
        {
            PARENT_POLICY_LABEL: policy.name,
            LEGACY_CLUSTER_NAME_LABEL: cluster_name,
            CLUSTER_NAME_LABEL: cluster_name,
            LEGACY_CLUSTER_NAMESPACE_LABEL: cluster_namespace,
            CLUSTER_NAMESPACE_LABEL: cluster_namespace,
        }
    )
    return merged


def override_remediation_action(policy: Policy, obj: dict[str, Any]) -> None:
    """
    Apply the policy's remediation action to a child object in place.

    Gatekeeper constraints translate it to spec.enforcementAction and
    ConstraintTemplates are left alone. A child set to informonly becomes
    inform and keeps it regardless of the policy.
    """
    gvk = GroupVersionKind.from_api_version(str(obj.get("apiVersion", "")), str(obj.get("kind", "")))
    policy_action = (policy.spec.remediation_action or "").lower()

    if is_constraint(gvk):
        enforcement = {
            RemediationAction.INFORM: "warn",
            RemediationAction.ENFORCE: "deny",
        }.get(policy_action)
        spec = obj.get("spec")
        if enforcement and isinstance(spec, dict):
            spec["enforcementAction"] = enforcement
        return
    if is_constraint_template(gvk):
        return

    spec = obj.get("spec")
    if not isinstance(spec, dict):
        return

    current = spec.get("remediationAction")
    if isinstance(current, str) and current.lower() == RemediationAction.INFORM_ONLY:
        spec["remediationAction"] = RemediationAction.INFORM.value
        return

    if policy.spec.remediation_action:
        spec["remediationAction"] = policy.spec.remediation_action


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def equivalent_templates(existing: Mapping[str, Any], desired: dict[str, Any]) -> bool:
    """
    Compare the fields the synchronizer owns: spec, annotations, labels and owner references.

    Known server-side defaults are filled in on desired first so an object
    that only differs by them is not rewritten.
    """
    if desired.get("kind") == CONFIGURATION_POLICY_KIND:
        spec = desired.get("spec")
        if isinstance(spec, dict) and not spec.get("pruneObjectBehavior"):
            spec["pruneObjectBehavior"] = "None"

    if existing.get("spec") != desired.get("spec"):
        return False

    existing_meta = _metadata(existing)
    desired_meta = _metadata(desired)
    for key in ("annotations", "labels", "ownerReferences"):
        if (existing_meta.get(key) or None) != (desired_meta.get(key) or None):
            return False
    return True


def apply_template(existing: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, Any]:
    """Copy the owned fields of desired onto a copy of the existing object."""
    updated = copy.deepcopy(dict(existing))
    desired_meta = _metadata(desired)
    meta = updated.setdefault("metadata", {})
    updated["spec"] = copy.deepcopy(desired.get("spec"))
    for key in ("annotations", "labels", "ownerReferences"):
        value = desired_meta.get(key)
        if value:
            meta[key] = copy.deepcopy(value)
        else:
            meta.pop(key, None)
    return updated
