from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response

from bookora.api.error_handling import error_response
from bookora.api.schemas import (
    AcceptedResponse,
    BookingResponse,
    EmailRequest,
    Envelope,
    GuestBookingRequest,
    GuestBookingResponse,
    LoginRequest,
    PasswordResetConfirm,
    PrincipalResponse,
    SignupRequest,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from bookora.config import Settings
from bookora.logging import get_logger
from bookora.service.auth import TokenPair
from bookora.service.errors import AuthenticationError, ForbiddenError, InvalidTokenError
from bookora.service.gateway import (
    Anonymous,
    Authenticated,
    AuthResult,
    Principal,
    principal_var,
)
from bookora.service.runtime import get_runtime
from bookora.storage.models import Booking

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ACCEPTED_MESSAGE = "if the address belongs to an account, a message has been sent"
_REFRESH_REJECTED = "refresh token rejected"


def _set_refresh_cookie(response: Response, pair: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        pair.refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        token_type=pair.token_type,
        expires_at=pair.access_expires_at,
        user_id=pair.user_id,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        status=booking.status.value,
        start_time=booking.start_time,
        end_time=booking.end_time,
        provider_id=booking.provider_id,
        service_id=booking.service_id,
        notes=booking.notes,
    )


async def get_auth_result(authorization: Optional[str] = Header(None)) -> AuthResult:
    """Resolve the caller; endpoints that allow anonymous access depend on this."""
    # the user lookup may hit the database; keep it off the event loop
    result = await asyncio.to_thread(get_runtime().gateway.authenticate, authorization)
    if isinstance(result, Authenticated):
        principal_var.set(result.principal)
        structlog.contextvars.bind_contextvars(user_id=result.principal.user_id)
    return result


async def get_principal(result: AuthResult = Depends(get_auth_result)) -> Principal:
    if isinstance(result, Authenticated):
        return result.principal
    if isinstance(result, Anonymous):
        raise AuthenticationError("authentication required")
    raise AuthenticationError("invalid access token", detail={"reason": result.reason})


# -- sessions ---------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
def register(body: SignupRequest):
    """Create an account and mail a verification link; log in separately.

    Raises:
        403: signup disabled
        409: email already registered
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    user = runtime.auth.signup(body.email, body.password, first_name=body.first_name)
    runtime.email_verification.request(user)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, is_email_verified=user.is_email_verified),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, response: Response):
    """Exchange email and password for an access token and a refresh cookie.

    Raises:
        401: invalid credentials
        403: email address not yet verified
    """
    runtime = get_runtime()
    pair = runtime.auth.login(body.email, body.password)
    _set_refresh_cookie(response, pair, runtime.settings)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(request: Request, response: Response):
    """Rotate the refresh cookie and mint a new access token.

    Any failure clears the cookie so the client falls back to a fresh login.
    Reuse, unknown and expired tokens all get the same body; the cause is
    only logged.
    """
    runtime = get_runtime()
    settings = runtime.settings
    presented = request.cookies.get(settings.refresh_cookie_name)
    if not presented:
        failure = error_response(401, "refresh token missing", code="unauthorized")
        _clear_refresh_cookie(failure, settings)
        return failure
    try:
        pair = runtime.auth.rotate(presented)
    except InvalidTokenError as exc:
        logger.warning("refresh_rejected", error_type=type(exc).__name__)
        failure = error_response(401, _REFRESH_REJECTED, code="invalid_token")
        _clear_refresh_cookie(failure, settings)
        return failure
    _set_refresh_cookie(response, pair, settings)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    runtime.auth.logout(request.cookies.get(settings.refresh_cookie_name))
    _clear_refresh_cookie(response, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            roles=sorted(principal.roles),
            is_guest=principal.is_guest,
        ),
    )


# -- password reset ---------------------------------------------------------


@router.post("/auth/password/forgot", response_model=Envelope, status_code=202, tags=["auth"])
def forgot_password(body: EmailRequest):
    get_runtime().password_reset.request(body.email)
    return Envelope(status="ok", data=AcceptedResponse(message=_ACCEPTED_MESSAGE))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
def reset_password(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    runtime.password_reset.complete(body.token, body.new_password)
    # every lineage is gone, so the caller's cookie is dead too
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "password updated"})


# -- email verification -----------------------------------------------------


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
def verify_email(body: TokenRequest):
    user = get_runtime().email_verification.complete(body.token)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, is_email_verified=user.is_email_verified),
    )


@router.post("/auth/email/resend", response_model=Envelope, status_code=202, tags=["auth"])
def resend_verification(body: EmailRequest):
    get_runtime().email_verification.resend(body.email)
    return Envelope(status="ok", data=AcceptedResponse(message=_ACCEPTED_MESSAGE))


# -- guest bookings ---------------------------------------------------------


@router.post("/bookings/guest", response_model=Envelope, status_code=201, tags=["bookings"])
def create_guest_booking(body: GuestBookingRequest):
    """Create a PENDING booking for a guest; the confirmation link is mailed."""
    booking = get_runtime().guest_access.create_booking(
        body.email,
        body.start_time,
        body.end_time,
        first_name=body.first_name,
        provider_id=body.provider_id,
        service_id=body.service_id,
        notes=body.notes,
    )
    return Envelope(status="ok", data=_booking_response(booking))


@router.post("/bookings/guest/view", response_model=Envelope, tags=["bookings"])
def view_guest_booking(body: TokenRequest):
    view = get_runtime().guest_access.view(body.token)
    return Envelope(
        status="ok",
        data=GuestBookingResponse(
            booking=_booking_response(view.booking),
            token_consumed=view.token_consumed,
            token_expires_at=view.token_expires_at,
        ),
    )


@router.post("/bookings/guest/confirm", response_model=Envelope, tags=["bookings"])
def confirm_guest_booking(body: TokenRequest):
    booking = get_runtime().guest_access.confirm(body.token)
    return Envelope(status="ok", data=_booking_response(booking))


__all__ = ["router", "get_auth_result", "get_principal"]
