"""
Custom Exceptions
=================

Unified exception hierarchy for consistent error handling across the studio.
"""

from typing import Optional, Dict, Any


class StudioError(Exception):
    """Base exception for all Comic Studio errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ConfigurationError(StudioError):
    """Configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# Generation Service Errors
# =============================================================================


class ServiceError(StudioError):
    """Generation service errors (text, image, audio, video, consistency)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status_code:
            details["status_code"] = status_code
        if response_body:
            # Truncate large responses
            details["response_body"] = response_body[:500] if len(response_body) > 500 else response_body

        recoverable = kwargs.pop("recoverable", status_code in (429, 500, 502, 503, 504) if status_code else False)
        super().__init__(message, recoverable=recoverable, details=details, **kwargs)
        self.status_code = status_code


class RateLimitedError(ServiceError):
    """Rate limit exceeded."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        kwargs.setdefault("status_code", 429)
        super().__init__(message, recoverable=True, details=details, **kwargs)
        self.retry_after = retry_after


class InvalidInputError(ServiceError):
    """The service refused the request as malformed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("status_code", 400)
        super().__init__(message, recoverable=False, **kwargs)


class ServiceUnavailableError(ServiceError):
    """The service is down, overloaded, or unreachable."""

    def __init__(self, message: str, **kwargs):
        recoverable = kwargs.pop("recoverable", True)
        super().__init__(message, recoverable=recoverable, **kwargs)


class SafetyRejectedError(ServiceError):
    """The service blocked the request or its output on safety grounds."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reason:
            details["reason"] = reason
        super().__init__(message, recoverable=False, details=details, **kwargs)


# =============================================================================
# Pipeline Errors
# =============================================================================


class ValidationError(StudioError):
    """Input/output validation errors, including malformed structured responses."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        if constraint:
            details["constraint"] = constraint
        super().__init__(message, details=details, **kwargs)


class StageCallError(StudioError):
    """A stage-level call failed and the stage advance was aborted."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        stage: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if action:
            details["action"] = action
        if stage:
            details["stage"] = stage
        super().__init__(message, details=details, **kwargs)


class TransitionError(StudioError):
    """Illegal workflow stage transition."""

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if current:
            details["current"] = current
        if target:
            details["target"] = target
        super().__init__(message, recoverable=False, details=details, **kwargs)


class PreconditionError(TransitionError):
    """An action was triggered while its guard does not hold."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if action:
            details["action"] = action
        super().__init__(message, details=details, **kwargs)


class BusyError(StudioError):
    """Another action is still running against the same project."""

    def __init__(
        self,
        message: str,
        running_action: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if running_action:
            details["running_action"] = running_action
        super().__init__(message, recoverable=True, details=details, **kwargs)


class PersistenceError(StudioError):
    """Persistence backend errors."""

    def __init__(
        self,
        message: str,
        project_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if project_id:
            details["project_id"] = project_id
        super().__init__(message, details=details, **kwargs)


class ResourceNotFoundError(StudioError):
    """Resource not found errors."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, recoverable=False, details=details, **kwargs)
