from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from policysync.clients.base import ObjectStore
from policysync.domain.constants import MAX_EVENT_MESSAGE_LENGTH
from policysync.domain.identity import EVENT_GVK
from policysync.domain.models import ComplianceState, format_micro_time, format_time

logger = structlog.get_logger()

COMPLIANCE_ACTION = "ComplianceStateUpdate"


def event_reason(namespace: str, name: str) -> str:
    """Reason that attributes a compliance event to a template."""
    if namespace:
        return f"policy: {namespace}/{name}"
    return f"policy: {name}"


def compliance_message(compliance: ComplianceState, message: str) -> str:
    """Prefix the compliance state and cap the length accepted by the event sink."""
    text = f"{compliance}; {message}"
    if len(text) > MAX_EVENT_MESSAGE_LENGTH:
        text = text[: MAX_EVENT_MESSAGE_LENGTH - 3] + "..."
    return text


def event_type(compliance: ComplianceState) -> str:
    """NonCompliant and blocking Pending signals are warnings."""
    if compliance in (ComplianceState.NON_COMPLIANT, ComplianceState.PENDING):
        return "Warning"
    return "Normal"


def object_reference(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Build an ObjectReference for an object or owner reference mapping."""
    meta = obj.get("metadata") or {}
    ref = {
        "apiVersion": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "name": obj.get("name") or meta.get("name", ""),
        "namespace": obj.get("namespace") or meta.get("namespace", ""),
        "uid": obj.get("uid") or meta.get("uid", ""),
    }
    return {k: v for k, v in ref.items() if v}


class ComplianceEventSender:
    """
    Sends compliance events synchronously through an object store.

    The event name follows the client-go recorder convention
    ``<owner>.<hex unix nanos>`` so that events sharing a timestamp can still
    be ordered.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        cluster_namespace: str,
        controller_name: str,
        instance_name: str = "",
        clock: Callable[[], int] = time.time_ns,
    ):
        self.store = store
        self.cluster_namespace = cluster_namespace
        self.controller_name = controller_name
        self.instance_name = instance_name
        self._clock = clock

    def build_event(
        self,
        *,
        owner: Mapping[str, Any],
        reason: str,
        message: str,
        compliance: ComplianceState,
        related: Mapping[str, Any] | None = None,
        namespace: str | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        namespace = namespace or self.cluster_namespace
        nanos = self._clock()
        now = datetime.fromtimestamp(nanos / 1_000_000_000, tz=timezone.utc)

        involved = object_reference(owner)
        # Owners always live in the same namespace as the event
        involved["namespace"] = namespace

        event: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{owner.get('name', '')}.{nanos:x}",
                "namespace": namespace,
            },
            "involvedObject": involved,
            "reason": reason,
            "message": compliance_message(compliance, message),
            "source": {"component": self.controller_name, "host": self.instance_name},
            "firstTimestamp": format_time(now),
            "lastTimestamp": format_time(now),
            "eventTime": format_micro_time(now),
            "count": 1,
            "type": event_type(compliance),
            "action": COMPLIANCE_ACTION,
            "reportingComponent": self.controller_name,
            "reportingInstance": self.instance_name,
        }
        if related:
            event["related"] = object_reference(related)
        if annotations:
            event["metadata"]["annotations"] = dict(annotations)
        return event

    async def send(
        self,
        *,
        owner: Mapping[str, Any],
        reason: str,
        message: str,
        compliance: ComplianceState,
        related: Mapping[str, Any] | None = None,
        namespace: str | None = None,
        annotations: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        event = self.build_event(
            owner=owner,
            reason=reason,
            message=message,
            compliance=compliance,
            related=related,
            namespace=namespace,
            annotations=annotations,
        )
        created = await self.store.create(EVENT_GVK, event)
        logger.info(
            "compliance_event_sent",
            controller=self.controller_name,
            owner=owner.get("name"),
            reason=reason,
            compliance=str(compliance),
        )
        return created
