from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from policysync.domain.constants import POLICY_KIND
from policysync.domain.models import ComplianceHistory, Policy
from policysync.statussync.history import history_from_event, parse_event_reason

logger = structlog.get_logger()


def event_to_request(event: Mapping[str, Any]) -> tuple[str, str] | None:
    """Reconcile key (namespace, name) of the Policy an observed event is about."""
    involved = event.get("involvedObject") or {}
    name = involved.get("name")
    if not name:
        return None
    namespace = involved.get("namespace") or (event.get("metadata") or {}).get("namespace", "")
    logger.debug(
        "event_mapped",
        event_name=(event.get("metadata") or {}).get("name"),
        namespace=namespace,
        policy=name,
    )
    return namespace, name


def is_event_for_policy(event: Mapping[str, Any], policy: Policy) -> bool:
    involved = event.get("involvedObject") or {}
    uid = involved.get("uid")
    if uid and policy.metadata.uid:
        return uid == policy.metadata.uid
    return involved.get("kind") == POLICY_KIND and involved.get("name") == policy.name


def events_for_policy(
    events: Iterable[Mapping[str, Any]], policy: Policy
) -> dict[str, list[ComplianceHistory]]:
    """Group the compliance events of a policy by template name."""
    grouped: dict[str, list[ComplianceHistory]] = defaultdict(list)
    for event in events:
        if not is_event_for_policy(event, policy):
            continue
        parsed = parse_event_reason(str(event.get("reason", "")))
        if parsed is None:
            continue
        _, template_name = parsed
        grouped[template_name].append(history_from_event(event))
    return dict(grouped)
