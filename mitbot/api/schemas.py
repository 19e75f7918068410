from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from mitbot.logging import get_request_id

MAX_MESSAGE_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "cancelled",
    "timeout",
    "upstream_error",
    "server_error",
})


def _default_request_id() -> str:
    return get_request_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_default_request_id)


class MessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)


class DialogResponse(BaseModel):
    """A prompt or final message; ``answers`` lists the buttons to offer."""

    message: str
    answers: List[str] = Field(default_factory=list)


class RevokeResponse(BaseModel):
    revoked: bool
    prompt: Optional[DialogResponse] = None
