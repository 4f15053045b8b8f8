from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for domain failures mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on:
    - validation_error (400)
    - unauthorized / invalid_token / token_expired (401)
    - forbidden / email_not_verified (403)
    - not_found (404)
    - conflict / token_already_used / invalid_transition (409)
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


class BadRequestError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(BadRequestError):
    """New password does not meet the minimum policy."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


# -- token failures ---------------------------------------------------------


class InvalidTokenError(AuthenticationError):
    """Any failure to accept a presented token."""

    error_code = "invalid_token"


class MalformedTokenError(InvalidTokenError):
    """Structurally invalid; rejected before any lookup."""

    status_code = 400


class TokenNotFoundError(InvalidTokenError):
    pass


class TokenExpiredError(InvalidTokenError):
    error_code = "token_expired"


class TokenAlreadyConsumedError(InvalidTokenError):
    status_code = 409
    error_code = "token_already_used"


class InvalidSignatureError(InvalidTokenError):
    pass


class WrongTokenPurposeError(InvalidTokenError):
    pass


class TokenReuseDetectedError(InvalidTokenError):
    """Presentation of an exhausted refresh token.

    Code and message match an unrecognised refresh token.
    """

    def __init__(self, lineage_id: Optional[str] = None) -> None:
        super().__init__("refresh token not recognised")
        self.lineage_id = lineage_id


# -- booking failures -------------------------------------------------------


class BookingNotFoundError(NotFoundError):
    pass


class InvalidBookingTransitionError(ConflictError):
    error_code = "invalid_transition"


class BookingNotPendingError(InvalidBookingTransitionError):
    error_code = "booking_not_pending"


class BookingAlreadyExpiredError(InvalidBookingTransitionError):
    error_code = "booking_expired"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "WeakPasswordError",
    "AuthenticationError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidTokenError",
    "MalformedTokenError",
    "TokenNotFoundError",
    "TokenExpiredError",
    "TokenAlreadyConsumedError",
    "InvalidSignatureError",
    "WrongTokenPurposeError",
    "TokenReuseDetectedError",
    "BookingNotFoundError",
    "InvalidBookingTransitionError",
    "BookingNotPendingError",
    "BookingAlreadyExpiredError",
]
