from __future__ import annotations

from policysync.domain.models import ComplianceState, Policy


def should_reconcile_update(old: Policy, new: Policy) -> bool:
    """Filter Policy updates down to those the template synchronizer must act on."""
    if old.metadata.generation != new.metadata.generation:
        return True

    # Dependencies may have changed state, so it may need to become Pending
    if new.has_dependencies() and new.status.compliance_state != ComplianceState.PENDING:
        return True

    # An older template-error means the error may need to be announced again
    for details in new.status.details:
        for i, entry in enumerate(details.history):
            if "template-error" in entry.message:
                if i == 0:
                    break
                return True

    return False
