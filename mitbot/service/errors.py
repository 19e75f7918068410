from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP status_code and a stable error_code:
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - upstream_error (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidAnswerError(ValidationError):
    """The submitted answer is not one of the current question's choices."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TokenNotFoundError(NotFoundError):
    """The user has no live tokens to act on."""

    def __init__(self, message: str = "token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class KeyNotFoundError(NotFoundError):
    """A selected key prefix does not match any live key."""

    def __init__(self, message: str = "selected key not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProtocolViolationError(ServiceError):
    """The caller drove the dialog in a way the current state does not allow (409)."""
    status_code = 409
    error_code = "conflict"


class IllegalTransitionError(ProtocolViolationError):
    """Conversation operation attempted from a state that does not permit it."""


class NoMoreQuestionsError(ProtocolViolationError):
    """The questionnaire has no question left at the cursor."""

    def __init__(self, message: str = "no more questions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class QuestionnaireIncompleteError(ProtocolViolationError):
    """Results requested before every question was answered."""

    def __init__(self, message: str = "questionnaire is incomplete", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnsupportedStateError(ProtocolViolationError):
    """A completed leg ran under a state with no registered handler."""
    status_code = 500
    error_code = "server_error"


class CollaboratorError(ServiceError):
    """A store or provider call failed; ``step`` names the failing call (502)."""
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, step: str, cause: Exception, **kwargs) -> None:
        super().__init__(f"failed to {step}: {cause}", **kwargs)
        self.step = step
        self.cause = cause
        self.detail.setdefault("step", step)


class PartialFailureError(CollaboratorError):
    """The provider revoked a key but the repository still holds it, or vice versa."""


class RequestCancelledError(ServiceError):
    """A newer request from the same user superseded this one (409)."""
    status_code = 409
    error_code = "cancelled"

    def __init__(self, message: str = "request superseded by a newer one", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RequestTimeoutError(ServiceError):
    """The request did not finish within the configured deadline (504)."""
    status_code = 504
    error_code = "timeout"

    def __init__(self, message: str = "request timed out", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidAnswerError",
    "NotFoundError",
    "TokenNotFoundError",
    "KeyNotFoundError",
    "ProtocolViolationError",
    "IllegalTransitionError",
    "NoMoreQuestionsError",
    "QuestionnaireIncompleteError",
    "UnsupportedStateError",
    "CollaboratorError",
    "PartialFailureError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "ServerError",
]
