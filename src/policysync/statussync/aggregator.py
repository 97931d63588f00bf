"""
Compliance history aggregator.

Keeps the managed copy of a replicated Policy in step with the hub copy and
rebuilds the Policy status from the compliance events recorded for it. The
status is written to both stores, each only when it actually changed.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from policysync.clients.base import ObjectStore
from policysync.core.errors import NotFoundError, PolicySyncError, TemplateDecodeError
from policysync.domain.constants import CLUSTER_NAMESPACE_LABEL
from policysync.domain.identity import EVENT_GVK, POLICY_GVK
from policysync.domain.models import (
    ComplianceState,
    DetailsPerTemplate,
    Policy,
    PolicyStatus,
    TemplateMeta,
)
from policysync.domain.raw_object import RawObject
from policysync.logging import bind_request, log_template_failure
from policysync.runtime.controller import ReconcileResult
from policysync.runtime.uninstall import UninstallState
from policysync.statussync.events import events_for_policy
from policysync.statussync.history import build_history, compliance_from_history, rollup
from policysync.templatesync.templates import synthetic_name

logger = structlog.get_logger()

CONTROLLER_NAME = "policy-status-sync"

# Server-owned metadata that must not be copied into a newly created object
_SERVER_FIELDS = ("ownerReferences", "resourceVersion", "uid", "creationTimestamp", "managedFields")


def compute_status(
    policy: Policy, events: Iterable[Mapping[str, Any]], log: Any = None
) -> PolicyStatus:
    """Rebuild a policy status from its carried-over history and the observed events."""
    log = log or logger
    observed = events_for_policy(events, policy)
    previous = {d.template_meta.name: d for d in policy.status.details}
    details: list[DetailsPerTemplate] = []

    for index, template in enumerate(policy.templates):
        decode_failed = False
        template_name = ""
        try:
            template_name = RawObject.decode(template.object_definition).name
        except TemplateDecodeError as exc:
            decode_failed = True
            log_template_failure(
                log,
                "template_decode_failed",
                category="user",
                error_type="format-error",
                error=exc,
                template_index=index,
            )
        if not template_name:
            template_name = synthetic_name(index)

        existing = previous.get(template_name)
        history = build_history(existing.history if existing else [], observed.get(template_name, []))
        state = compliance_from_history(history)
        if decode_failed:
            # A malformed template must never drop out of the rollup
            state = ComplianceState.NON_COMPLIANT

        details.append(
            DetailsPerTemplate(
                template_meta=TemplateMeta(name=template_name),
                compliance_state=state,
                history=history,
            )
        )

    return PolicyStatus(
        compliance_state=rollup(d.compliance_state for d in details),
        details=details,
    )


class ComplianceHistoryAggregator:
    def __init__(
        self,
        *,
        hub: ObjectStore,
        managed: ObjectStore,
        hub_namespace: str,
        uninstall: UninstallState,
        on_multicluster_hub: bool = False,
        uninstall_requeue_seconds: float = 300.0,
    ) -> None:
        self.hub = hub
        self.managed = managed
        self.hub_namespace = hub_namespace
        self.uninstall = uninstall
        self.on_multicluster_hub = on_multicluster_hub
        self.uninstall_requeue_seconds = uninstall_requeue_seconds

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        log = bind_request(CONTROLLER_NAME, namespace, name).bind(hub_namespace=self.hub_namespace)

        if self.uninstall.is_uninstalling:
            log.info("reconcile_skipped_uninstalling")
            return ReconcileResult(requeue_after=self.uninstall_requeue_seconds)

        try:
            managed_obj = await self.managed.get(POLICY_GVK, namespace, name)
        except NotFoundError:
            return await self._recover_managed(namespace, name, log)

        try:
            hub_obj = await self.hub.get(POLICY_GVK, self.hub_namespace, name)
        except NotFoundError:
            log.info("hub_policy_deleted")
            try:
                await self.managed.delete(POLICY_GVK, namespace, name)
            except NotFoundError:
                pass
            log.info("managed_policy_deleted")
            return ReconcileResult()

        policy = Policy.from_object(managed_obj)
        hub_policy = Policy.from_object(hub_obj)

        if not policy.equivalent_to(hub_policy):
            # Status work happens on the pass triggered by this update
            log.info("policy_spec_mismatch")
            updated = copy.deepcopy(managed_obj)
            meta = updated.setdefault("metadata", {})
            hub_annotations = (hub_obj.get("metadata") or {}).get("annotations")
            if hub_annotations:
                meta["annotations"] = copy.deepcopy(hub_annotations)
            else:
                meta.pop("annotations", None)
            updated["spec"] = copy.deepcopy(hub_obj.get("spec") or {})
            await self.managed.update(POLICY_GVK, updated)
            return ReconcileResult()

        events = await self.managed.list(EVENT_GVK, namespace=namespace)
        status = compute_status(policy, events, log)

        if not status.same_as(policy.status):
            updated = copy.deepcopy(managed_obj)
            updated["status"] = status.to_object()
            await self.managed.update_status(POLICY_GVK, updated)
            log.info("managed_status_updated", compliant=str(status.compliance_state))
        else:
            log.debug("managed_status_in_sync")

        if not self.on_multicluster_hub:
            await self._sync_hub_status(name, hub_obj, status, log)

        return ReconcileResult()

    async def _sync_hub_status(
        self, name: str, hub_obj: dict[str, Any], status: PolicyStatus, log: Any
    ) -> None:
        try:
            hub_obj = await self.hub.get(POLICY_GVK, self.hub_namespace, name)
        except PolicySyncError as exc:
            log.warning("hub_policy_refresh_failed", error=str(exc))

        if Policy.from_object(hub_obj).status.same_as(status):
            log.debug("hub_status_in_sync")
            return

        updated = copy.deepcopy(hub_obj)
        updated["status"] = status.to_object()
        await self.hub.update_status(POLICY_GVK, updated)
        log.info("hub_status_updated", compliant=str(status.compliance_state))

    async def _recover_managed(self, namespace: str, name: str, log: Any) -> ReconcileResult:
        """Recreate a managed copy that was deleted while the hub copy still exists."""
        try:
            hub_obj = await self.hub.get(POLICY_GVK, self.hub_namespace, name)
        except NotFoundError:
            log.info("policy_deleted")
            return ReconcileResult()

        managed_obj = copy.deepcopy(hub_obj)
        meta = managed_obj.setdefault("metadata", {})
        meta["namespace"] = namespace
        labels = meta.get("labels") or {}
        if labels.get(CLUSTER_NAMESPACE_LABEL):
            labels[CLUSTER_NAMESPACE_LABEL] = namespace
        for key in _SERVER_FIELDS:
            meta.pop(key, None)

        await self.managed.create(POLICY_GVK, managed_obj)
        log.info("managed_policy_recreated")
        return ReconcileResult()
