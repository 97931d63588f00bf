from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from policysync.runtime.controller import ReconcileResult


class TemplateState(StrEnum):
    SATISFIED = "satisfied"
    PENDING = "pending"
    ERRORED = "errored"


class TemplateAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    NONE = "none"


@dataclass
class TemplateOutcome:
    """Result of processing one template in a pass."""

    index: int
    name: str
    state: TemplateState
    action: TemplateAction = TemplateAction.NONE
    message: str = ""
    error: BaseException | None = None
    # Whether the error should cause the whole Policy to be retried
    requeue: bool = False


@dataclass
class TemplateSyncResult(ReconcileResult):
    """
    Result of one template synchronizer pass.

    Every template's outcome is kept. Only the last error that asks for a
    requeue drives the retry; earlier ones are visible through outcomes and
    the emitted status messages.
    """

    outcomes: list[TemplateOutcome] = field(default_factory=list)

    def record(self, outcome: TemplateOutcome) -> TemplateOutcome:
        self.outcomes.append(outcome)
        if outcome.error is not None and outcome.requeue:
            self.error = outcome.error
            self.retry = True
        return outcome

    def fail(self, error: BaseException) -> None:
        """Surface an error that is not tied to a single template; its own class decides the retry."""
        self.error = error
        self.retry = None

    @property
    def errors(self) -> list[BaseException]:
        return [o.error for o in self.outcomes if o.error is not None]

    def outcome(self, name: str) -> TemplateOutcome | None:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None
