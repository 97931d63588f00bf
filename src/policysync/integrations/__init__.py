"""Relays for compliance results produced by other policy engines."""

from policysync.integrations.gatekeeper import (
    GatekeeperConstraintRelay,
    constraint_compliance,
    has_gatekeeper_constraints,
)
from policysync.integrations.policyreport import PolicyReportRelay, summarize_results

__all__ = [
    "GatekeeperConstraintRelay",
    "PolicyReportRelay",
    "constraint_compliance",
    "has_gatekeeper_constraints",
    "summarize_results",
]
