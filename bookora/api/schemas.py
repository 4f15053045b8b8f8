from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_token",
    "token_expired",
    "token_already_used",
    "forbidden",
    "email_not_verified",
    "not_found",
    "conflict",
    "invalid_transition",
    "booking_not_pending",
    "booking_expired",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of a fixed set clients can switch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64}$")
_DOMAIN = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z][a-z0-9-]{0,61}[a-z0-9]$")


def _validate_email(value: str) -> str:
    """Lower-case, NFKC-normalise and shape-check an address; no DNS lookups."""
    normalized = unicodedata.normalize("NFKC", value).strip().lower()
    local, sep, domain = normalized.rpartition("@")
    if len(normalized) > 254 or not sep:
        raise ValueError("invalid email address")
    if not _LOCAL_PART.match(local) or not _DOMAIN.match(domain):
        raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailRequest(BaseModel):
    """Body of forgot-password and resend-verification calls."""

    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class GuestBookingRequest(BaseModel):
    """Contact details plus the slot; no account needed."""

    email: str = Field(..., max_length=254)
    first_name: str = Field(..., min_length=1, max_length=100)
    start_time: datetime
    end_time: datetime
    provider_id: Optional[str] = Field(default=None, max_length=64)
    service_id: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_guest_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRequest(BaseModel):
    # tokens travel in the body so they stay out of access logs
    token: str = Field(..., max_length=256)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime
    user_id: str


class PrincipalResponse(BaseModel):
    user_id: str
    roles: List[str]
    is_guest: bool


class UserResponse(BaseModel):
    id: str
    email: str
    is_email_verified: bool


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    start_time: datetime
    end_time: datetime
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None


class GuestBookingResponse(BaseModel):
    booking: BookingResponse
    token_consumed: bool
    token_expires_at: datetime


class AcceptedResponse(BaseModel):
    message: str


__all__ = [
    "ErrorBody",
    "Envelope",
    "LoginRequest",
    "EmailRequest",
    "SignupRequest",
    "GuestBookingRequest",
    "TokenRequest",
    "PasswordResetConfirm",
    "TokenResponse",
    "PrincipalResponse",
    "UserResponse",
    "BookingResponse",
    "GuestBookingResponse",
    "AcceptedResponse",
]
