"""Aggregation of compliance events into Policy status."""

from policysync.statussync.aggregator import (
    CONTROLLER_NAME,
    ComplianceHistoryAggregator,
    compute_status,
)
from policysync.statussync.events import event_to_request, events_for_policy, is_event_for_policy
from policysync.statussync.history import (
    EVENT_REASON_PATTERN,
    build_history,
    collapse_duplicates,
    compliance_from_history,
    history_from_event,
    merge_history,
    parse_compliance,
    parse_event_name_timestamp,
    parse_event_reason,
    rollup,
    sort_history,
)

__all__ = [
    "CONTROLLER_NAME",
    "EVENT_REASON_PATTERN",
    "ComplianceHistoryAggregator",
    "build_history",
    "collapse_duplicates",
    "compliance_from_history",
    "compute_status",
    "event_to_request",
    "events_for_policy",
    "history_from_event",
    "is_event_for_policy",
    "merge_history",
    "parse_compliance",
    "parse_event_name_timestamp",
    "parse_event_reason",
    "rollup",
    "sort_history",
]
