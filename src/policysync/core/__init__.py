"""Core error handling shared by every controller."""

from policysync.core.errors import (
    AdoptionConflictError,
    ConflictError,
    DependencyConflictError,
    ErrorCategory,
    InvalidInputError,
    InvalidObjectError,
    MappingNotFoundError,
    NamingConflictError,
    NotFoundError,
    PolicySyncError,
    ProviderError,
    TemplateDecodeError,
    TemplateError,
    TransientError,
    UnsupportedTemplateError,
    error_category,
    format_error_message,
    is_retryable,
)

__all__ = [
    "AdoptionConflictError",
    "ConflictError",
    "DependencyConflictError",
    "ErrorCategory",
    "InvalidInputError",
    "InvalidObjectError",
    "MappingNotFoundError",
    "NamingConflictError",
    "NotFoundError",
    "PolicySyncError",
    "ProviderError",
    "TemplateDecodeError",
    "TemplateError",
    "TransientError",
    "UnsupportedTemplateError",
    "error_category",
    "format_error_message",
    "is_retryable",
]
