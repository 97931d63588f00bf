"""
Kyverno policy report relay.

Kyverno writes its audit results into ClusterPolicyReports. For every
Kyverno ClusterPolicy deployed by a Policy on this cluster, the results are
condensed into one compliance event addressed to the owning Policy.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from typing import Any

import structlog

from policysync.clients.base import ObjectStore
from policysync.core.errors import NotFoundError
from policysync.domain.constants import CLUSTER_NAMESPACE_LABEL
from policysync.domain.identity import GroupVersionKind
from policysync.domain.models import ComplianceState
from policysync.logging import bind_context
from policysync.relay.cache import RelayKey, ResultRelay
from policysync.relay.sender import ComplianceEventSender
from policysync.runtime.controller import ReconcileResult

logger = structlog.get_logger()

CONTROLLER_NAME = "clusterpolicyreport-status-relay"

CLUSTER_POLICY_REPORT_GVK = GroupVersionKind("wgpolicyk8s.io", "v1alpha2", "ClusterPolicyReport")
KYVERNO_CLUSTER_POLICY_GVK = GroupVersionKind("kyverno.io", "v1", "ClusterPolicy")

COMPLIANT_MESSAGE = "The ClusterPolicy is compliant."

_FAILING_RESULTS = frozenset({"fail", "error"})


def subject_to_string(subject: Mapping[str, Any]) -> str:
    """Render an ObjectReference as ``<apiVersion> <kind> [<ns>/]<name>``."""
    text = f"{subject.get('apiVersion', '')} {subject.get('kind', '')} "
    if subject.get("namespace"):
        text += f"{subject['namespace']}/"
    return text + str(subject.get("name", ""))


def summarize_results(results: list[Mapping[str, Any]]) -> tuple[ComplianceState, str]:
    """Condense the report results of one ClusterPolicy into a compliance and message."""
    compliance = ComplianceState.COMPLIANT
    parts: list[str] = []
    for result in results:
        if result.get("result") in _FAILING_RESULTS:
            compliance = ComplianceState.NON_COMPLIANT
        part = str(result.get("message") or result.get("description") or "")
        subjects = result.get("resources") or result.get("subjects") or []
        if subjects:
            part += " (" + "; ".join(subject_to_string(s) for s in subjects) + ")"
        parts.append(part)
    return compliance, "; ".join(parts)


def is_ready(cluster_policy: Mapping[str, Any]) -> bool:
    status = cluster_policy.get("status") or {}
    if status.get("ready"):
        return True
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions") or []
    )


class PolicyReportRelay:
    def __init__(
        self,
        *,
        managed: ObjectStore,
        sender: ComplianceEventSender,
        relay: ResultRelay,
        cluster_namespace: str,
    ) -> None:
        self.managed = managed
        self.sender = sender
        self.relay = relay
        self.cluster_namespace = cluster_namespace

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        log = bind_context(controller=CONTROLLER_NAME, report=name)

        try:
            report = await self.managed.get(CLUSTER_POLICY_REPORT_GVK, "", name)
        except NotFoundError:
            log.debug("policy_report_deleted")
            return ReconcileResult()

        managed_policies = await self.managed.list(
            KYVERNO_CLUSTER_POLICY_GVK,
            label_selector=f"{CLUSTER_NAMESPACE_LABEL}={self.cluster_namespace}",
        )
        remaining = {
            (p.get("metadata") or {}).get("name", ""): p for p in managed_policies
        }

        grouped: dict[str, list[Mapping[str, Any]]] = defaultdict(list)
        for result in report.get("results") or []:
            # Some Kyverno versions capitalize the source
            if str(result.get("source", "")).lower() != "kyverno":
                continue
            policy_name = result.get("policy", "")
            if policy_name not in remaining:
                continue
            grouped[policy_name].append(result)

        for policy_name, results in grouped.items():
            compliance, message = summarize_results(results)
            await self._relay(remaining.pop(policy_name), compliance, message, log)

        for policy_name, cluster_policy in remaining.items():
            key = RelayKey(policy_name)
            if not is_ready(cluster_policy) or key not in self.relay:
                continue
            # A result was announced before and the policy has now left the report
            sent = await self._send(cluster_policy, ComplianceState.COMPLIANT, COMPLIANT_MESSAGE)
            if sent is not None:
                self.relay.evict(key)
                log.info("cluster_policy_compliant", cluster_policy=policy_name)

        return ReconcileResult()

    async def _relay(
        self,
        cluster_policy: Mapping[str, Any],
        compliance: ComplianceState,
        message: str,
        log: Any,
    ) -> None:
        name = (cluster_policy.get("metadata") or {}).get("name", "")
        sent = False

        async def send() -> Any:
            nonlocal sent
            sent = await self._send(cluster_policy, compliance, message) is not None

        await self.relay.emit(RelayKey(name), f"{compliance}; {message}", send)
        if sent:
            log.info("cluster_policy_status_sent", cluster_policy=name, compliant=str(compliance))

    async def _send(
        self,
        cluster_policy: Mapping[str, Any],
        compliance: ComplianceState,
        message: str,
    ) -> dict[str, Any] | None:
        meta = cluster_policy.get("metadata") or {}
        owners = meta.get("ownerReferences") or []
        if not owners:
            return None

        namespace = meta.get("namespace") or "ClusterScoped"
        return await self.sender.send(
            owner=owners[0],
            reason=f"policy: {namespace}/{meta.get('name', '')}",
            message=message,
            compliance=compliance,
            related=cluster_policy,
        )
