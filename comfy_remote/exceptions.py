"""
Comfy Remote - Exception Hierarchy
===================================

Exception classes with:
- User-friendly vs developer messages (environment-aware)
- Structured error codes for programmatic handling
- HTTP status mapping for the web layer
- Recovery suggestions for common errors

Usage:
    from comfy_remote.exceptions import ComfyRemoteError, SubmitError

    try:
        job_id = await client.submit(job)
    except SubmitError as e:
        # User-friendly message for UI
        print(e.user_message)
        # Full details for logs
        logger.error(e.developer_message)
        # Raw backend response for diagnostics
        print(e.body)
"""

import os
from enum import Enum
from typing import Any

__all__ = [
    "ErrorLevel",
    # Base
    "ComfyRemoteError",
    # Backend errors
    "BackendError",
    "BackendConnectionError",
    "UploadError",
    "SubmitError",
    "NoResultFoundError",
    # Graph errors
    "MalformedGraphError",
    # Lookup errors
    "WorkflowNotFoundError",
    "HistoryItemNotFoundError",
    # Validation errors
    "ValidationError",
    "InvalidParameterError",
    "SecurityError",
    "AuthenticationError",
    # Resilience
    "RetryExhaustedError",
    # Utilities
    "format_error_for_user",
]

# Response bodies are truncated before they land in details/logs
MAX_BODY_CHARS = 2000


# =============================================================================
# ERROR LEVELS
# =============================================================================


class ErrorLevel(Enum):
    """Error severity levels for filtering and display."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _is_production() -> bool:
    """Check if running in production mode."""
    return os.environ.get("COMFY_REMOTE_ENV", "development").lower() == "production"


def _truncate(body: str | None) -> str:
    if not body:
        return ""
    return body if len(body) <= MAX_BODY_CHARS else body[:MAX_BODY_CHARS] + "..."


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class ComfyRemoteError(Exception):
    """
    Base exception for all comfy_remote errors.

    Attributes:
        message: Technical error message
        user_message: User-friendly explanation
        code: Error code for programmatic handling
        details: Dict with additional context
        suggestions: List of recovery suggestions
        level: Error severity level
        http_status: Status code the web layer answers with
    """

    _default_user_message = "An error occurred"
    _default_suggestions: list[str] = []
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
        suggestions: list[str] | None = None,
        level: ErrorLevel = ErrorLevel.ERROR,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self._user_message = user_message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self._suggestions = suggestions
        self.level = level
        self.request_id = request_id

        if request_id:
            self.details["request_id"] = request_id

        if cause:
            self.__cause__ = cause

    @property
    def user_message(self) -> str:
        """Get user-friendly message (for UI display)."""
        return self._user_message or self._default_user_message

    @property
    def developer_message(self) -> str:
        """Get full technical message (for logs/debugging)."""
        prefix = f"[{self.code}]"
        if self.request_id:
            prefix = f"[{self.code}:{self.request_id}]"
        msg = f"{prefix} {self.message}"
        filtered_details = {
            k: v for k, v in self.details.items() if k not in ("request_id", "body")
        }
        if filtered_details:
            details_str = ", ".join(f"{k}={v}" for k, v in filtered_details.items())
            msg += f" ({details_str})"
        if self.cause:
            msg += f" [caused by: {type(self.cause).__name__}: {self.cause}]"
        return msg

    @property
    def suggestions(self) -> list[str]:
        """Get recovery suggestions."""
        return self._suggestions or self._default_suggestions

    def add_context(self, key: str, value: Any) -> "ComfyRemoteError":
        """Add context information (chainable)."""
        self.details[key] = value
        return self

    def to_dict(self, include_internal: bool = False) -> dict[str, Any]:
        """
        Convert exception to dictionary for JSON serialization.

        Args:
            include_internal: Include developer details (False in production)
        """
        result = {
            "error": self.user_message,
            "code": self.code,
            "suggestions": self.suggestions,
        }

        if self.request_id:
            result["request_id"] = self.request_id

        if include_internal or not _is_production():
            result["details"] = self.details
            result["developer_message"] = self.developer_message
            if self.cause:
                result["cause"] = str(self.cause)

        return result

    def __str__(self) -> str:
        if _is_production():
            return self.user_message
        return self.developer_message


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendError(ComfyRemoteError):
    """Base class for render backend errors."""

    _default_user_message = "The render backend reported an error"
    http_status = 502


class BackendConnectionError(BackendError):
    """Failed to reach the render backend."""

    _default_user_message = "Unable to connect to the render backend"
    _default_suggestions = [
        "Check that ComfyUI is running",
        "Verify the backend URL",
        "Check firewall settings",
    ]

    def __init__(
        self,
        message: str = "Failed to connect to the render backend",
        url: str | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if url:
            details["url"] = url
        super().__init__(message, code="BACKEND_CONNECTION_ERROR", details=details, **kwargs)


class UploadError(BackendError):
    """Input image upload was rejected or returned an unusable response."""

    _default_user_message = "Failed to upload the input image"

    def __init__(
        self,
        message: str = "Image upload failed",
        status_code: int | None = None,
        body: str | None = None,
        **kwargs,
    ):
        self.status_code = status_code
        self.body = _truncate(body)
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        details["body"] = self.body
        user_message = kwargs.pop("user_message", None) or (
            f"Upload failed: {self.body}" if self.body else None
        )
        super().__init__(
            message, code="UPLOAD_ERROR", details=details, user_message=user_message, **kwargs
        )


class SubmitError(BackendError):
    """Job submission was rejected or returned no job id."""

    _default_user_message = "The render backend rejected the job"
    _default_suggestions = [
        "Check that every model referenced by the workflow is installed",
        "Open the workflow in ComfyUI and run it once to surface node errors",
    ]

    def __init__(
        self,
        message: str = "Job submission failed",
        status_code: int | None = None,
        body: str | None = None,
        **kwargs,
    ):
        self.status_code = status_code
        self.body = _truncate(body)
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        details["body"] = self.body
        user_message = kwargs.pop("user_message", None) or (
            f"Backend error: {self.body}" if self.body else None
        )
        super().__init__(
            message, code="SUBMIT_ERROR", details=details, user_message=user_message, **kwargs
        )


class NoResultFoundError(BackendError):
    """No image appeared in the backend history before the polling ceiling."""

    _default_user_message = "Timed out waiting for the image"
    _default_suggestions = [
        "Check the ComfyUI queue; the job may still be running",
        "Make sure the workflow ends in a SaveImage or PreviewImage node",
    ]
    http_status = 504

    def __init__(
        self,
        message: str = "No image found in backend history",
        job_id: str | None = None,
        elapsed_ms: float | None = None,
        history: Any = None,
        full_history: Any = None,
        **kwargs,
    ):
        self.job_id = job_id
        self.history = history
        self.full_history = full_history
        details = kwargs.pop("details", {})
        if job_id:
            details["job_id"] = job_id
        if elapsed_ms is not None:
            details["elapsed_ms"] = round(elapsed_ms)
        super().__init__(message, code="NO_RESULT_FOUND", details=details, **kwargs)


# =============================================================================
# GRAPH ERRORS
# =============================================================================


class MalformedGraphError(ComfyRemoteError):
    """The graph payload itself is not usable (not an object)."""

    _default_user_message = "The workflow file is not a valid graph"
    http_status = 400

    def __init__(self, message: str = "Workflow graph must be a JSON object", **kwargs):
        super().__init__(message, code="MALFORMED_GRAPH", **kwargs)


# =============================================================================
# LOOKUP ERRORS
# =============================================================================


class WorkflowNotFoundError(ComfyRemoteError):
    """Requested workflow id is not in the store."""

    _default_user_message = "Workflow not found"
    _default_suggestions = ["Import the workflow again or pick another one"]
    http_status = 404

    def __init__(self, workflow_id: str, message: str | None = None, **kwargs):
        msg = message or f"Workflow not found: {workflow_id}"
        details = kwargs.pop("details", {})
        details["workflow_id"] = workflow_id
        super().__init__(msg, code="WORKFLOW_NOT_FOUND", details=details, **kwargs)


class HistoryItemNotFoundError(ComfyRemoteError):
    """Requested history record or artifact does not exist."""

    _default_user_message = "History item not found"
    http_status = 404

    def __init__(self, item_id: str, message: str | None = None, **kwargs):
        msg = message or f"History item not found: {item_id}"
        details = kwargs.pop("details", {})
        details["item_id"] = item_id
        super().__init__(msg, code="HISTORY_ITEM_NOT_FOUND", details=details, **kwargs)


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ComfyRemoteError):
    """Base class for validation errors."""

    _default_user_message = "Invalid input"
    http_status = 400


class InvalidParameterError(ValidationError):
    """Parameter value is invalid."""

    def __init__(
        self,
        parameter: str,
        value: Any,
        reason: str | None = None,
        **kwargs,
    ):
        msg = f"Invalid value for '{parameter}': {value!r}"
        if reason:
            msg += f" ({reason})"

        details = kwargs.pop("details", {})
        details["parameter"] = parameter
        details["value"] = str(value)
        if reason:
            details["reason"] = reason

        user_msg = kwargs.pop("user_message", None) or f"Invalid {parameter}" + (
            f": {reason}" if reason else ""
        )
        super().__init__(
            msg, code="INVALID_PARAMETER", user_message=user_msg, details=details, **kwargs
        )


class SecurityError(ValidationError):
    """Security-related validation failure."""

    _default_user_message = "Security check failed"

    def __init__(self, message: str = "Security validation failed", **kwargs):
        super().__init__(message, code="SECURITY_ERROR", level=ErrorLevel.WARNING, **kwargs)


class AuthenticationError(ComfyRemoteError):
    """Missing or invalid session."""

    _default_user_message = "Unauthorized"
    http_status = 401

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, code="UNAUTHORIZED", level=ErrorLevel.WARNING, **kwargs)


# =============================================================================
# RESILIENCE ERRORS
# =============================================================================


class RetryExhaustedError(ComfyRemoteError):
    """All retry attempts exhausted."""

    _default_user_message = "Operation failed after multiple attempts"
    _default_suggestions = [
        "Wait a moment and try again",
        "Check your connection",
    ]
    http_status = 503

    def __init__(
        self,
        message: str = "All retry attempts exhausted",
        attempts: int | None = None,
        last_error: Exception | None = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if attempts:
            details["attempts"] = attempts
        super().__init__(
            message, code="RETRY_EXHAUSTED", details=details, cause=last_error, **kwargs
        )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def format_error_for_user(error: Exception) -> str:
    """
    Format any exception for user display.

    comfy_remote errors render their user message; anything else only
    exposes its type outside of development mode.
    """
    if isinstance(error, ComfyRemoteError):
        return error.user_message
    if _is_production():
        return f"Error: {type(error).__name__}"
    return f"{type(error).__name__}: {error}"
