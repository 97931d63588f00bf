"""
Error taxonomy for policy reconciliation.

Every failure raised inside a reconcile belongs to one of these classes:

- Transient: requeue without a user-visible error (conflicts, unreachable
  stores, watch disconnects).
- User: bad input in a Policy or one of its templates. Reported as a
  status message on the template and not retried for that template.
- System: unexpected failures of clients, mappers or stores. Reported
  like user errors but tagged separately in logs.

Nothing here is fatal to the process; failures are scoped to a single
reconcile of a single identity.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Broad classification used for logging and retry decisions."""

    TRANSIENT = "transient"
    USER = "user"
    SYSTEM = "system"


class PolicySyncError(Exception):
    """Base exception for policysync errors."""

    category: ErrorCategory = ErrorCategory.SYSTEM
    retryable: bool = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransientError(PolicySyncError):
    """Raised when a store is temporarily unreachable or a watch dropped."""

    category = ErrorCategory.TRANSIENT


class ConflictError(TransientError):
    """Raised on an optimistic-concurrency (resourceVersion) conflict."""


class NotFoundError(PolicySyncError):
    """Raised when the requested object does not exist."""

    retryable = False


class ProviderError(PolicySyncError):
    """Raised when a client, mapper or store fails unexpectedly."""

    category = ErrorCategory.SYSTEM


class InvalidObjectError(PolicySyncError):
    """Raised when the store rejects an object as invalid."""

    category = ErrorCategory.USER
    retryable = False


class InvalidInputError(PolicySyncError):
    """Raised when an object identity can't be constructed. Never retried."""

    category = ErrorCategory.USER
    retryable = False


class TemplateError(PolicySyncError):
    """Base class for user errors scoped to a single policy template."""

    category = ErrorCategory.USER
    retryable = False
    error_type: str = "format-error"


class TemplateDecodeError(TemplateError):
    """Raised when a template's object definition can't be decoded."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        missing_kind: bool = False,
    ):
        super().__init__(message, details)
        self.missing_kind = missing_kind


class MappingNotFoundError(TemplateError):
    """Raised when no API resource is served for a group/version/kind."""

    error_type = "crd-error"


class UnsupportedTemplateError(TemplateError):
    """Raised for kinds that aren't synced or templates using hub templating."""

    error_type = "crd-error"


class DependencyConflictError(TemplateError):
    """Raised when one dependency is declared with conflicting compliance states."""

    error_type = "dependency-error"


class NamingConflictError(TemplateError):
    """Raised when a template's object is already owned by another policy."""


class AdoptionConflictError(NamingConflictError):
    """Raised when a same-named object exists with no owner and no parent label."""


def is_retryable(error: BaseException | None) -> bool:
    """Return whether the error should cause the reconcile to be retried."""
    if error is None:
        return False
    if isinstance(error, PolicySyncError):
        return error.retryable
    return True


def error_category(error: BaseException) -> ErrorCategory:
    """Return the category of an arbitrary exception."""
    if isinstance(error, PolicySyncError):
        return error.category
    return ErrorCategory.SYSTEM


def format_error_message(error: PolicySyncError) -> str:
    """Format an error message for display in logs and status messages."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
