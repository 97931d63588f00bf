"""Expansion of replicated Policies into their child objects."""

from policysync.templatesync.outcomes import (
    TemplateAction,
    TemplateOutcome,
    TemplateState,
    TemplateSyncResult,
)
from policysync.templatesync.predicate import should_reconcile_update
from policysync.templatesync.synchronizer import CONTROLLER_NAME, TemplateSynchronizer

__all__ = [
    "CONTROLLER_NAME",
    "TemplateAction",
    "TemplateOutcome",
    "TemplateState",
    "TemplateSyncResult",
    "TemplateSynchronizer",
    "should_reconcile_update",
]
