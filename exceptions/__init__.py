"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    ExternalServiceError,
    DatabaseError,

    # Batch
    BatchTooLargeError,
    AssetNotFoundError,
    AssetImmutableError,

    # Grouping / review
    GroupNotFoundError,
    InvalidRegroupError,
    NothingToReviewError,

    # Pipeline / resume
    InvalidStateTransitionError,
    SessionNotFoundError,
    PipelineBusyError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "ExternalServiceError",
    "DatabaseError",

    # Batch
    "BatchTooLargeError",
    "AssetNotFoundError",
    "AssetImmutableError",

    # Grouping / review
    "GroupNotFoundError",
    "InvalidRegroupError",
    "NothingToReviewError",

    # Pipeline / resume
    "InvalidStateTransitionError",
    "SessionNotFoundError",
    "PipelineBusyError",
]
