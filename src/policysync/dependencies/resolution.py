"""
Dependency resolution and evaluation.

A template is gated on the union of its policy's top-level dependencies and
its own extra dependencies. The union is keyed by object identity: the
first declaration wins and any later declaration asking for a different
compliance state is a conflict.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any

import structlog

from policysync.core.errors import (
    DependencyConflictError,
    MappingNotFoundError,
    PolicySyncError,
)
from policysync.dependencies.watcher import DynamicWatcher
from policysync.domain.constants import (
    API_GROUP,
    GATEKEEPER_CONSTRAINT_GROUP,
    GATEKEEPER_TEMPLATE_GROUP,
)
from policysync.domain.identity import ObjectIdentifier
from policysync.domain.models import ComplianceState, PolicyDependency

logger = structlog.get_logger()

DependencyMap = dict[ObjectIdentifier, ComplianceState]


class DependencyFailure(StrEnum):
    """Why a dependency is not satisfied."""

    NO_API_MAPPING = "Could not find an API mapping for the dependency"
    OBJECT_NOT_FOUND = "Dependency object not found"
    GET_FAILED = "Failed to get the dependency object"
    COMPLIANCE_NOT_FOUND = "Failed to find complianceState on the dependency object"
    COMPLIANCE_MISMATCH = "Compliance mismatch on the dependency object"


def resolve_top_level(
    dependencies: Iterable[PolicyDependency], policy_namespace: str
) -> DependencyMap:
    """
    Build the policy-level dependency map.

    Conflicting declarations are logged and dropped; the first one stays in
    effect for every template.
    """
    resolved: DependencyMap = {}
    for dep in dependencies:
        ident = ObjectIdentifier.for_dependency(dep, policy_namespace)
        existing = resolved.get(ident)
        if existing is not None:
            if existing != dep.compliance:
                logger.error(
                    "dependency_conflict",
                    dependency=str(ident),
                    error=f"dependency on {dep.name} has conflicting compliance states",
                    error_category="user",
                    error_type="dependency-error",
                )
            continue
        resolved[ident] = dep.compliance
    return resolved


def resolve_dependencies(
    top_level: Mapping[ObjectIdentifier, ComplianceState],
    extra: Iterable[PolicyDependency],
    policy_namespace: str,
) -> DependencyMap:
    """
    Merge a template's extra dependencies into a copy of the top-level map.

    Raises DependencyConflictError when the same identity is declared with a
    different compliance state.
    """
    resolved: DependencyMap = dict(top_level)
    for dep in extra:
        ident = ObjectIdentifier.for_dependency(dep, policy_namespace)
        existing = resolved.get(ident)
        if existing is not None and existing != dep.compliance:
            raise DependencyConflictError(
                f"dependency on {dep.name} has conflicting compliance states",
                details={"dependency": str(ident)},
            )
        resolved.setdefault(ident, dep.compliance)
    return resolved


def check_dependency(
    ident: ObjectIdentifier, desired: ComplianceState, obj: Mapping[str, Any]
) -> DependencyFailure | None:
    """Evaluate a fetched dependency object against the desired compliance."""
    if ident.group == GATEKEEPER_TEMPLATE_GROUP:
        # A ConstraintTemplate has no status; existing means Compliant.
        if desired != ComplianceState.COMPLIANT:
            return DependencyFailure.COMPLIANCE_MISMATCH
        return None

    status = obj.get("status")
    if not isinstance(status, Mapping):
        return DependencyFailure.COMPLIANCE_NOT_FOUND

    if ident.group == GATEKEEPER_CONSTRAINT_GROUP:
        violations = status.get("totalViolations")
        if not isinstance(violations, int) or isinstance(violations, bool):
            return DependencyFailure.COMPLIANCE_NOT_FOUND
        if (violations == 0) != (desired == ComplianceState.COMPLIANT):
            return DependencyFailure.COMPLIANCE_MISMATCH
        return None

    compliance = status.get("compliant")
    if not isinstance(compliance, str):
        return DependencyFailure.COMPLIANCE_NOT_FOUND
    if compliance != desired:
        return DependencyFailure.COMPLIANCE_MISMATCH
    return None


async def evaluate_dependencies(
    watcher: DynamicWatcher,
    owner: ObjectIdentifier,
    dependencies: Mapping[ObjectIdentifier, ComplianceState],
    cluster_namespace: str,
    log: Any = None,
) -> dict[ObjectIdentifier, DependencyFailure]:
    """
    Fetch every dependency through the cache and collect the unsatisfied ones.

    Must be called inside a query batch for the owner.
    """
    log = log or logger
    failures: dict[ObjectIdentifier, DependencyFailure] = {}

    for ident, desired in dependencies.items():
        namespace = ident.namespace
        if not namespace and ident.group == API_GROUP:
            # Policies always live in the cluster namespace
            namespace = cluster_namespace

        try:
            obj = await watcher.get(owner, ident.gvk, namespace, ident.name)
        except MappingNotFoundError as exc:
            failures[ident] = DependencyFailure.NO_API_MAPPING
            log.error(
                "dependency_lookup_failed",
                dependency=str(ident),
                reason=failures[ident].value,
                error=str(exc),
            )
            continue
        except PolicySyncError as exc:
            failures[ident] = DependencyFailure.GET_FAILED
            log.error(
                "dependency_lookup_failed",
                dependency=str(ident),
                reason=failures[ident].value,
                error=str(exc),
            )
            continue

        if obj is None:
            if ident.group == GATEKEEPER_TEMPLATE_GROUP and desired != ComplianceState.COMPLIANT:
                log.debug("dependency_satisfied", dependency=str(ident), reason="absent")
                continue
            failures[ident] = DependencyFailure.OBJECT_NOT_FOUND
        else:
            failure = check_dependency(ident, desired, obj)
            if failure is not None:
                failures[ident] = failure

        if ident in failures:
            log.debug(
                "dependency_not_satisfied", dependency=str(ident), reason=failures[ident].value
            )
        else:
            log.debug("dependency_satisfied", dependency=str(ident))

    return failures


def generate_pending_message(failures: Iterable[ObjectIdentifier]) -> str:
    """
    Describe the unsatisfied dependencies.

    Example: ``Dependencies were not satisfied: 1 is still pending (FooPolicy foo)``
    """
    names = sorted(f"{ident.kind} {ident.name}" for ident in failures)
    verb = "is" if len(names) == 1 else "are"
    return (
        f"Dependencies were not satisfied: {len(names)} {verb} still pending ({', '.join(names)})"
    )
