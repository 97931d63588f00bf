"""
Compliance history merging.

Status signals arrive out of order and may be redelivered. The functions
here turn the carried-over history of a template plus newly observed
signals into a deterministic, bounded history, and derive compliance from
it. Everything is pure except for the warning logged when two entries
cannot be ordered.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any

import structlog

from policysync.domain.constants import HISTORY_LIMIT
from policysync.domain.models import ComplianceHistory, ComplianceState

logger = structlog.get_logger()

EVENT_REASON_PATTERN = re.compile(r"^policy:\s*(?:([a-z0-9.-]+)\s*\/)?(.+)", re.IGNORECASE)
COMBINED_PREFIX = "(combined from similar events):"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_event_reason(reason: str) -> tuple[str, str] | None:
    """Split a ``policy: [<ns>/]<template>`` reason into (namespace, template)."""
    match = EVENT_REASON_PATTERN.match(reason or "")
    if match is None:
        return None
    return match.group(1) or "", match.group(2)


def strip_combined_prefix(message: str) -> str:
    message = message or ""
    if message.startswith(COMBINED_PREFIX):
        message = message[len(COMBINED_PREFIX) :]
    return message.strip()


def history_from_event(event: Mapping[str, Any]) -> ComplianceHistory:
    """Build a history entry from an observed Event object."""
    metadata = event.get("metadata") or {}
    return ComplianceHistory(
        lastTimestamp=event.get("lastTimestamp"),
        message=strip_combined_prefix(str(event.get("message", ""))),
        eventName=str(metadata.get("name", "")),
        eventTime=event.get("eventTime") or None,
    )


def parse_event_name_timestamp(event_name: str) -> int:
    """
    Return the hex nanosecond timestamp suffixed to an event name.

    Raises ValueError when the part after the last '.' is not hexadecimal.
    """
    suffix = event_name.rsplit(".", 1)[-1]
    try:
        return int(suffix, 16)
    except ValueError:
        raise ValueError(
            f"Unable to find a valid hexadecimal timestamp in event name: {event_name}"
        ) from None


def _identity(entry: ComplianceHistory) -> tuple[datetime | None, str]:
    return entry.last_timestamp, entry.event_name


def merge_history(
    existing: Iterable[ComplianceHistory], observed: Iterable[ComplianceHistory]
) -> list[ComplianceHistory]:
    """
    Union observed entries with the carried-over history.

    Identity is (lastTimestamp, eventName). An observed entry wins over an
    existing one with the same identity since only it carries eventTime.
    """
    merged = list(observed)
    seen = {_identity(entry) for entry in merged}
    for entry in existing:
        if _identity(entry) not in seen:
            merged.append(entry)
            seen.add(_identity(entry))
    return merged


def _compare_newest_first(a: ComplianceHistory, b: ComplianceHistory) -> int:
    a_ts = a.last_timestamp or _EPOCH
    b_ts = b.last_timestamp or _EPOCH
    if a_ts != b_ts:
        return -1 if a_ts > b_ts else 1

    if a.event_time is not None and b.event_time is not None:
        if a.event_time == b.event_time:
            return 0
        return -1 if a.event_time > b.event_time else 1

    try:
        a_nanos = parse_event_name_timestamp(a.event_name)
        b_nanos = parse_event_name_timestamp(b.event_name)
    except ValueError as exc:
        logger.warning("history_order_ambiguous", error=str(exc))
        return 0

    if a_nanos == b_nanos:
        return 0
    return -1 if a_nanos > b_nanos else 1


def sort_history(entries: Iterable[ComplianceHistory]) -> list[ComplianceHistory]:
    """
    Sort newest first.

    Equal lastTimestamps are ordered by eventTime when both entries carry
    one, then by the hex timestamp in the event name. Entries that still
    can't be ordered keep their relative order.
    """
    return sorted(entries, key=cmp_to_key(_compare_newest_first))


def collapse_duplicates(entries: Iterable[ComplianceHistory]) -> list[ComplianceHistory]:
    """Collapse each run of adjacent entries with the same event name and message."""
    collapsed: list[ComplianceHistory] = []
    for entry in entries:
        if collapsed:
            previous = collapsed[-1]
            if previous.event_name == entry.event_name and previous.message == entry.message:
                continue
        collapsed.append(entry)
    return collapsed


def build_history(
    existing: Iterable[ComplianceHistory], observed: Iterable[ComplianceHistory]
) -> list[ComplianceHistory]:
    """Merge, sort, collapse and truncate a template's history."""
    return collapse_duplicates(sort_history(merge_history(existing, observed)))[:HISTORY_LIMIT]


def parse_compliance(message: str) -> ComplianceState:
    clean = strip_combined_prefix(message).lower()
    if clean.startswith("compliant"):
        return ComplianceState.COMPLIANT
    if clean.startswith("pending"):
        return ComplianceState.PENDING
    return ComplianceState.NON_COMPLIANT


def compliance_from_history(history: list[ComplianceHistory]) -> ComplianceState:
    if not history:
        return ComplianceState.UNKNOWN
    return parse_compliance(history[0].message)


def rollup(states: Iterable[ComplianceState]) -> ComplianceState:
    """
    Overall compliance of a policy.

    NonCompliant dominates, then Pending or unknown, then Compliant.
    """
    states = list(states)
    if ComplianceState.NON_COMPLIANT in states:
        return ComplianceState.NON_COMPLIANT
    if ComplianceState.PENDING in states or ComplianceState.UNKNOWN in states:
        return ComplianceState.PENDING
    return ComplianceState.COMPLIANT

