from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from framesense.logging import get_correlation_id
from framesense.service.credentials import validate_email

# stable codes clients may branch on
ERROR_CODES = frozenset(
    {
        "validation_error",
        "duplicate_email",
        "weak_password",
        "unauthorized",
        "invalid_credentials",
        "invalid_token",
        "invalid_signature",
        "session_expired",
        "user_not_found",
        "forbidden",
        "quota_exceeded",
        "model_not_permitted",
        "not_found",
        "server_error",
    }
)

MAX_PASSWORD_LENGTH = 1024


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code '{value}'")
        return value


class Envelope(BaseModel):
    """Response wrapper shared by every endpoint.

    ``user`` and ``token`` are filled by the auth endpoints, ``data`` by the
    rest; ``error`` is present only when ``success`` is false.
    """

    success: bool
    user: Optional[Dict[str, Any]] = None
    token: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)

    def to_response_body(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RegisterRequest(BaseModel):
    # password is taken verbatim; login compares it byte for byte
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    name: str = Field(..., min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class UsageRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(default=1, ge=1, le=1000)
