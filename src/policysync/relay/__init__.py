"""Idempotent emission of compliance signals."""

from policysync.relay.cache import RelayKey, ResultRelay
from policysync.relay.sender import (
    ComplianceEventSender,
    compliance_message,
    event_reason,
    object_reference,
)
from policysync.relay.status import TemplateStatusReporter, policy_subject

__all__ = [
    "ComplianceEventSender",
    "RelayKey",
    "ResultRelay",
    "TemplateStatusReporter",
    "compliance_message",
    "event_reason",
    "object_reference",
    "policy_subject",
]
