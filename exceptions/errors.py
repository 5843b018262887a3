"""
Custom exception classes for the application.

Every error carries a stable code, an HTTP status and a details dict.
"""

from typing import Optional, Any
from datetime import datetime, timezone


class AppError(Exception):
    """
    Base exception for all application errors.
    
    All custom exceptions inherit from this.
    
    Attributes:
        code: Error code (e.g., "PRODUCT_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """
    
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)
    
    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""
    
    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""
    
    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""
    
    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""
    
    def __init__(
        self,
        service: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""
    
    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="DATABASE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# BATCH ERRORS
# ===================

class BatchTooLargeError(AppError):
    """Upload batch exceeds the configured cap (413)."""

    def __init__(self, size: int, max_size: int):
        super().__init__(
            code="BATCH_TOO_LARGE",
            message=f"A bulk upload can hold at most {max_size} photos (got {size})",
            status_code=413,
            details={"size": size, "max_size": max_size}
        )


class AssetNotFoundError(NotFoundError):
    """Uploaded asset not found."""

    def __init__(self, asset_id: str):
        super().__init__(
            resource="Asset",
            identifier=asset_id,
            code="ASSET_NOT_FOUND"
        )


class AssetImmutableError(ConflictError):
    """Uploaded assets cannot change status."""

    def __init__(self, asset_id: str, new_status: str):
        super().__init__(
            code="ASSET_IMMUTABLE",
            message="Asset is already uploaded and cannot change",
            details={"asset_id": asset_id, "new_status": new_status}
        )


# ===================
# GROUPING / REVIEW ERRORS
# ===================

class GroupNotFoundError(NotFoundError):
    """Item group not found."""

    def __init__(self, group_id: str):
        super().__init__(
            resource="Item group",
            identifier=group_id,
            code="GROUP_NOT_FOUND"
        )


class InvalidRegroupError(ValidationError):
    """Manual regrouping does not partition the uploaded photos."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="INVALID_REGROUP",
            message=message,
            details=details
        )


class NothingToReviewError(ValidationError):
    """Resolution requested with no groups left."""

    def __init__(self, action: str):
        super().__init__(
            code="NOTHING_TO_REVIEW",
            message=f"No item groups available for {action}",
            details={"action": action}
        )


# ===================
# PIPELINE / RESUME ERRORS
# ===================

class InvalidStateTransitionError(ConflictError):
    """Invalid resumption state transition."""

    def __init__(self, current_state: str, new_state: str):
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=f"Cannot transition from {current_state} to {new_state}",
            details={
                "current_state": current_state,
                "new_state": new_state,
            }
        )


class SessionNotFoundError(NotFoundError):
    """No live bulk ingestion session."""

    def __init__(self, session_id: str):
        super().__init__(
            resource="Bulk ingest session",
            identifier=session_id,
            code="SESSION_NOT_FOUND"
        )


class PipelineBusyError(ConflictError):
    """A pipeline run is already in progress for this session."""

    def __init__(self, session_id: str):
        super().__init__(
            code="PIPELINE_BUSY",
            message="A bulk upload is already running for this session",
            details={"session_id": session_id}
        )
