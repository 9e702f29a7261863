"""
Structured Error Handling for the Account Hierarchy
Provides error hierarchy with categorization, error codes, and structured context.

The engine raises these directly; the request layer maps `http_status` and
`to_dict()` onto caller-facing responses.
"""

from typing import Dict, Any, List, Optional
from enum import Enum


class ErrorCategory(str, Enum):
    """Error categories for classification and handling."""
    TRANSIENT = "TRANSIENT"  # Temporary errors that should be retried
    PERMANENT = "PERMANENT"  # Errors that won't succeed on retry
    VALIDATION = "VALIDATION"  # Input or structural rule violations
    CONFLICT = "CONFLICT"  # Concurrent writers touched the same record


class ErrorCode(str, Enum):
    """Standardized error codes for monitoring and debugging."""
    # Hierarchy rule violations
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    LEVEL_LIMIT_EXCEEDED = "LEVEL_LIMIT_EXCEEDED"
    HAS_CHILDREN = "HAS_CHILDREN"
    INVALID_LEVEL = "INVALID_LEVEL"
    HIERARCHY_CYCLE = "HIERARCHY_CYCLE"
    TENANT_MISMATCH = "TENANT_MISMATCH"

    # Concurrency / partial writes
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    PARTIAL_MUTATION = "PARTIAL_MUTATION"

    # Store errors
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    STORE_TIMEOUT = "STORE_TIMEOUT"
    STORE_INVALID_QUERY = "STORE_INVALID_QUERY"
    STORE_NOT_FOUND = "STORE_NOT_FOUND"
    INVALID_PARAMETER = "INVALID_PARAMETER"
    INTERNAL = "INTERNAL"


class HierarchyException(Exception):
    """
    Base exception for all account hierarchy errors.

    Provides structured error information for monitoring, debugging, and error recovery.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        error_code: ErrorCode,
        http_status: int = 500,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize structured exception.

        Args:
            message: Human-readable error message
            category: Error category for classification
            error_code: Standardized error code
            http_status: HTTP status code the request layer should return
            context: Additional context (account_id, client_id, etc.)
            original_error: Original exception if wrapped
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.error_code = error_code
        self.http_status = http_status
        self.context = context or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error": self.error_code.value,
            "message": self.message,
            "category": self.category.value,
            "http_status": self.http_status
        }

        if self.context:
            result["context"] = self.context

        if self.original_error:
            result["original_error"] = str(self.original_error)

        return result

    def is_retryable(self) -> bool:
        """Check if this error should be retried."""
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.CONFLICT)


# ============================================
# Hierarchy Rule Violations
# ============================================

class AccountNotFoundError(HierarchyException):
    """Account (or the named parent) does not exist."""

    def __init__(
        self,
        account_id: str,
        message: str = "Account not found",
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PERMANENT,
            error_code=ErrorCode.ACCOUNT_NOT_FOUND,
            http_status=404,
            context={"account_id": account_id, **(context or {})}
        )
        self.account_id = account_id


class LevelLimitExceededError(HierarchyException):
    """Operation would place a node beyond the maximum hierarchy level."""

    def __init__(
        self,
        message: str = "Cannot create account beyond level 5",
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            error_code=ErrorCode.LEVEL_LIMIT_EXCEEDED,
            http_status=400,
            context=context
        )


class HasChildrenError(HierarchyException):
    """Deletion blocked: only leaf accounts can be removed."""

    def __init__(
        self,
        account_id: str,
        child_count: int
    ):
        super().__init__(
            message="Cannot delete account with children",
            category=ErrorCategory.VALIDATION,
            error_code=ErrorCode.HAS_CHILDREN,
            http_status=409,
            context={"account_id": account_id, "children_count": child_count}
        )


class InvalidLevelError(HierarchyException):
    """Level query argument outside 1..5."""

    def __init__(self, level: Any):
        super().__init__(
            message="Level must be between 1 and 5",
            category=ErrorCategory.VALIDATION,
            error_code=ErrorCode.INVALID_LEVEL,
            http_status=400,
            context={"level": level}
        )


class HierarchyCycleError(HierarchyException):
    """Move target is the account itself or one of its descendants."""

    def __init__(self, account_id: str, new_parent_id: str):
        super().__init__(
            message="Cannot move account into its own branch",
            category=ErrorCategory.VALIDATION,
            error_code=ErrorCode.HIERARCHY_CYCLE,
            http_status=400,
            context={"account_id": account_id, "new_parent_id": new_parent_id}
        )


class TenantMismatchError(HierarchyException):
    """Parent and child would belong to different tenants."""

    def __init__(self, client_id: str, parent_client_id: str, parent_id: str):
        super().__init__(
            message="Parent account belongs to a different client",
            category=ErrorCategory.VALIDATION,
            error_code=ErrorCode.TENANT_MISMATCH,
            http_status=400,
            context={
                "client_id": client_id,
                "parent_client_id": parent_client_id,
                "parent_id": parent_id,
            }
        )


# ============================================
# Concurrency / Partial Writes
# ============================================

class ConcurrentModificationError(HierarchyException):
    """Version check failed: another writer changed the record first."""

    def __init__(self, account_id: str, expected_version: int):
        super().__init__(
            message="Account was modified concurrently; reload and retry",
            category=ErrorCategory.CONFLICT,
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            http_status=409,
            context={"account_id": account_id, "expected_version": expected_version}
        )


class PartialMutationError(HierarchyException):
    """
    A multi-step mutation failed after some writes were applied.

    Nothing is rolled back. `completed_steps` tells the operator which
    writes landed so the tree can be repaired deliberately.
    """

    def __init__(
        self,
        operation: str,
        account_id: str,
        completed_steps: List[str],
        failed_step: str,
        original_error: Exception
    ):
        super().__init__(
            message=f"{operation} failed at '{failed_step}' after partial writes; hierarchy may be inconsistent",
            category=ErrorCategory.PERMANENT,
            error_code=ErrorCode.PARTIAL_MUTATION,
            http_status=500,
            context={
                "operation": operation,
                "account_id": account_id,
                "completed_steps": list(completed_steps),
                "failed_step": failed_step,
            },
            original_error=original_error
        )
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step


# ============================================
# Store Errors
# ============================================

class StoreError(HierarchyException):
    """Base for errors raised by a HierarchyStore backend."""


class StoreUnavailableError(StoreError):
    """Backing store temporarily unavailable."""

    def __init__(
        self,
        message: str = "Hierarchy store temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSIENT,
            error_code=ErrorCode.STORE_UNAVAILABLE,
            http_status=503,
            context=context,
            original_error=original_error
        )


class StoreTimeoutError(StoreError):
    """Store call exceeded its timeout."""

    def __init__(
        self,
        message: str = "Hierarchy store call timed out",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSIENT,
            error_code=ErrorCode.STORE_TIMEOUT,
            http_status=504,
            context=context,
            original_error=original_error
        )


class StoreQueryError(StoreError):
    """Permanent store failure (bad query, missing table, unexpected error)."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORE_INVALID_QUERY,
        http_status: int = 500,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PERMANENT,
            error_code=error_code,
            http_status=http_status,
            context=context,
            original_error=original_error
        )


# ============================================
# Error Classification Helper
# ============================================

def classify_exception(exc: Exception) -> HierarchyException:
    """
    Classify a generic exception into a structured HierarchyException.

    Used for wrapping driver exceptions (BigQuery, etc.) raised inside
    store adapters.

    Args:
        exc: Original exception

    Returns:
        Appropriate HierarchyException subclass
    """
    from google.api_core import exceptions as google_exceptions

    if isinstance(exc, HierarchyException):
        return exc

    if isinstance(exc, (google_exceptions.ServiceUnavailable,
                        google_exceptions.TooManyRequests,
                        google_exceptions.InternalServerError)):
        return StoreUnavailableError(message=str(exc), original_error=exc)

    if isinstance(exc, (TimeoutError, google_exceptions.DeadlineExceeded)):
        return StoreTimeoutError(message=str(exc), original_error=exc)

    if isinstance(exc, google_exceptions.BadRequest):
        return StoreQueryError(message=str(exc), original_error=exc)

    if isinstance(exc, google_exceptions.NotFound):
        return StoreQueryError(
            message=str(exc),
            error_code=ErrorCode.STORE_NOT_FOUND,
            original_error=exc
        )

    if isinstance(exc, ConnectionError):
        return StoreUnavailableError(message=str(exc), original_error=exc)

    if isinstance(exc, (ValueError, TypeError)):
        return StoreQueryError(
            message=str(exc),
            error_code=ErrorCode.INVALID_PARAMETER,
            http_status=400,
            original_error=exc
        )

    return StoreQueryError(
        message=f"Unexpected error: {type(exc).__name__}: {exc}",
        error_code=ErrorCode.INTERNAL,
        original_error=exc
    )
