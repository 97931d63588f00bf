"""
Gatekeeper constraint status relay.

Gatekeeper audit results are posted on the constraint objects themselves.
This controller turns them into compliance events for the Policy that
deployed each constraint, so that they land in the Policy status history
like any other template result.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from policysync.clients.base import ObjectStore
from policysync.core.errors import InvalidInputError, NotFoundError, PolicySyncError
from policysync.dependencies.watcher import DynamicWatcher
from policysync.domain.constants import (
    GATEKEEPER_CONSTRAINT_GROUP,
    GATEKEEPER_WEBHOOK_ENTRY,
    GATEKEEPER_WEBHOOK_NAME,
)
from policysync.domain.identity import (
    CRD_GVK,
    POLICY_GVK,
    WEBHOOK_CONFIGURATION_GVK,
    GroupVersionKind,
    ObjectIdentifier,
)
from policysync.domain.models import ComplianceState, Policy
from policysync.domain.raw_object import RawObject
from policysync.logging import bind_request
from policysync.relay.cache import RelayKey, ResultRelay
from policysync.relay.sender import ComplianceEventSender, event_reason
from policysync.runtime.controller import ReconcileResult
from policysync.runtime.uninstall import UninstallState

logger = structlog.get_logger()

CONTROLLER_NAME = "gatekeeper-constraint-status-sync"

# Constraint status is always read at this version so that its schema is stable
CONSTRAINT_STATUS_VERSION = "v1beta1"

NO_VIOLATIONS_MESSAGE = "The constraint has no violations"
INVALID_STATUS_MESSAGE = "The constraint status is invalid"


def has_gatekeeper_constraints(policy: Policy) -> bool:
    for template in policy.templates:
        try:
            raw = RawObject.decode(template.object_definition)
        except PolicySyncError:
            continue
        if raw.group == GATEKEEPER_CONSTRAINT_GROUP:
            return True
    return False


def should_reconcile_update(old: Policy, new: Policy) -> bool:
    """Only generation changes of policies that have, or had, constraints matter."""
    if old.metadata.generation == new.metadata.generation:
        return False
    return has_gatekeeper_constraints(old) or has_gatekeeper_constraints(new)


def constraint_crd_name(kind: str) -> str:
    return f"{kind.lower()}.{GATEKEEPER_CONSTRAINT_GROUP}"


def enforcement_action(constraint: Mapping[str, Any]) -> str:
    """spec.enforcementAction of a constraint; Gatekeeper defaults it to deny."""
    spec = constraint.get("spec") or {}
    if "enforcementAction" not in spec:
        return "deny"
    action = spec["enforcementAction"]
    if not isinstance(action, str):
        raise InvalidInputError(
            "invalid spec.enforcementAction", details={"enforcementAction": repr(action)}
        )
    return action


def violation_message(violation: Mapping[str, Any]) -> str:
    name = violation.get("name", "")
    if "namespace" in violation:
        name = f"{violation['namespace']}/{name}"
    return (
        f"{violation.get('enforcementAction')} - {violation.get('message')} "
        f"(on {violation.get('kind')} {name})"
    )


def constraint_compliance(constraint: Mapping[str, Any]) -> tuple[ComplianceState, str] | None:
    """
    Compliance and message derived from a constraint's audit results.

    Returns None while the audit has not run yet.
    """
    status = constraint.get("status") or {}
    total = status.get("totalViolations")
    if not isinstance(total, int) or isinstance(total, bool):
        return None

    violations = status.get("violations")
    if violations is None:
        violations = []
    if not isinstance(violations, list):
        return ComplianceState.NON_COMPLIANT, INVALID_STATUS_MESSAGE
    if not violations:
        return ComplianceState.COMPLIANT, NO_VIOLATIONS_MESSAGE

    messages = [violation_message(v) for v in violations if isinstance(v, Mapping)]
    return ComplianceState.NON_COMPLIANT, "; ".join(messages)


class GatekeeperConstraintRelay:
    def __init__(
        self,
        *,
        managed: ObjectStore,
        watcher: DynamicWatcher,
        sender: ComplianceEventSender,
        relay: ResultRelay,
        uninstall: UninstallState,
        uninstall_requeue_seconds: float = 300.0,
    ) -> None:
        self.managed = managed
        self.watcher = watcher
        self.sender = sender
        self.relay = relay
        self.uninstall = uninstall
        self.uninstall_requeue_seconds = uninstall_requeue_seconds

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        log = bind_request(CONTROLLER_NAME, namespace, name)

        if self.uninstall.is_uninstalling:
            log.info("reconcile_skipped_uninstalling")
            return ReconcileResult(requeue_after=self.uninstall_requeue_seconds)

        owner = ObjectIdentifier.for_policy(namespace, name)
        subject = f"{namespace}/{name}"

        try:
            obj = await self.managed.get(POLICY_GVK, namespace, name)
        except NotFoundError:
            log.info("policy_deleted", evicted=self.relay.evict_subject(subject))
            try:
                await self.watcher.remove_watcher(owner)
            except InvalidInputError as exc:
                log.error("invalid_policy_identifier", error=str(exc), retry=False)
            return ReconcileResult()

        policy = Policy.from_object(obj)
        constraints: set[RelayKey] = set()

        await self.watcher.start_query_batch(owner)
        try:
            for index, template in enumerate(policy.templates):
                try:
                    raw = RawObject.decode(template.object_definition)
                except PolicySyncError as exc:
                    log.error("template_invalid", template_index=index, error=str(exc))
                    continue

                if raw.group != GATEKEEPER_CONSTRAINT_GROUP:
                    continue

                key = RelayKey(subject, f"{raw.kind}/{raw.name}")
                constraints.add(key)
                await self._relay_constraint(policy, owner, index, raw, key, log)
        finally:
            try:
                await self.watcher.end_query_batch(owner)
            except PolicySyncError as exc:
                log.error("query_batch_end_failed", error=str(exc))

        evicted = self.relay.retain(subject, constraints)
        if evicted:
            log.debug("removed_constraints_evicted", count=evicted)
        return ReconcileResult()

    async def _relay_constraint(
        self,
        policy: Policy,
        owner: ObjectIdentifier,
        index: int,
        raw: RawObject,
        key: RelayKey,
        log: Any,
    ) -> None:
        log = log.bind(constraint_kind=raw.kind, constraint=raw.name)

        # Reading the CRD first keeps a watch on it, so the constraint watch
        # goes away together with its ConstraintTemplate.
        crd = await self.watcher.get(owner, CRD_GVK, "", constraint_crd_name(raw.kind))
        if crd is None:
            log.info("constraint_crd_not_found")
            return

        gvk = GroupVersionKind(GATEKEEPER_CONSTRAINT_GROUP, CONSTRAINT_STATUS_VERSION, raw.kind)
        constraint = await self.watcher.get(owner, gvk, raw.namespace, raw.name)
        if constraint is None:
            log.info("constraint_not_found")
            return

        derived = constraint_compliance(constraint)
        if derived is None:
            log.debug("constraint_audit_pending")
            return

        compliance, message = derived
        await self._send(policy, constraint, index, key, message, compliance, log)

    async def _send(
        self,
        policy: Policy,
        constraint: Mapping[str, Any],
        index: int,
        key: RelayKey,
        message: str,
        compliance: ComplianceState,
        log: Any,
    ) -> None:
        try:
            action = enforcement_action(constraint)
        except InvalidInputError as exc:
            log.error("enforcement_action_invalid", error=str(exc))
            action = ""

        if action == "deny" and not await self.webhook_enabled():
            compliance = ComplianceState.NON_COMPLIANT
            message = (
                "The Gatekeeper validating webhook is disabled but the constraint's "
                f"spec.enforcementAction is {action}. {message}"
            )

        try:
            policy = Policy.from_object(
                await self.managed.get(POLICY_GVK, policy.namespace, policy.name)
            )
        except PolicySyncError as exc:
            log.warning("policy_refresh_failed", error=str(exc))

        full_message = f"{compliance}; {message}"
        if policy.status.latest_message(index) == full_message:
            self.relay.evict(key)
            return

        meta = constraint.get("metadata") or {}
        owner = {
            "apiVersion": policy.api_version,
            "kind": policy.kind,
            "name": policy.name,
            "uid": policy.metadata.uid or "",
        }

        async def send() -> Any:
            return await self.sender.send(
                owner=owner,
                reason=event_reason(meta.get("namespace", ""), meta.get("name", "")),
                message=message,
                compliance=compliance,
                related=constraint,
            )

        if await self.relay.emit(key, full_message, send):
            log.info("constraint_status_sent", compliant=str(compliance))

    async def webhook_enabled(self) -> bool:
        try:
            config = await self.managed.get(WEBHOOK_CONFIGURATION_GVK, "", GATEKEEPER_WEBHOOK_NAME)
        except NotFoundError:
            return False
        return any(
            webhook.get("name") == GATEKEEPER_WEBHOOK_ENTRY
            for webhook in config.get("webhooks") or []
        )
