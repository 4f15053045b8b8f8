from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from bookora.clock import ClockSource, SystemClock, ensure_utc
from bookora.logging import get_logger
from bookora.service.booking_state import BookingEvent, BookingStateMachine
from bookora.service.errors import (
    BadRequestError,
    BookingNotFoundError,
    BookingNotPendingError,
    ConflictError,
)
from bookora.service.notifications import MailEvent, NotificationSink
from bookora.service.opaque_tokens import OpaqueTokenStore
from bookora.storage.models import Booking, BookingStatus, TokenPurpose, User

# statuses that hold a provider's time slot
_SLOT_HOLDING = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


@dataclass(frozen=True)
class GuestBookingView:
    booking: Booking
    token_consumed: bool
    token_expires_at: datetime


class GuestAccessCoordinator:
    """Guest booking links: issue, view and confirm.

    The token holds the booking id; the booking never points back at its
    token. Confirmation consumes the token first, so a refused token never
    touches the booking.
    """

    def __init__(
        self,
        store,
        tokens: OpaqueTokenStore,
        notifications: NotificationSink,
        *,
        grace: timedelta,
        frontend_url: str,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifications = notifications
        self.grace = grace
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock or SystemClock()
        self.state_machine = BookingStateMachine()
        self.logger = get_logger(__name__)

    def create_booking(
        self,
        email: str,
        start_time: datetime,
        end_time: datetime,
        *,
        first_name: Optional[str] = None,
        provider_id: Optional[str] = None,
        service_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """Book without an account: PENDING until the mailed link is used.

        The link is only mailed, never returned, so confirming proves the
        guest controls the address.
        """
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        now = self.clock.now()
        if start_time <= now:
            raise BadRequestError("booking start time cannot be in the past")
        if end_time <= start_time:
            raise BadRequestError("booking end time must be after start time")
        if provider_id and self._overlaps(provider_id, start_time, end_time):
            self.logger.warning("guest_booking_slot_taken", provider_id=provider_id)
            raise ConflictError(
                "the selected time slot is already booked",
                detail={"provider_id": provider_id},
            )

        guest = self._find_or_create_guest(email, first_name)
        booking = self.store.save_booking(
            Booking.new(
                guest.id,
                start_time,
                end_time,
                provider_id=provider_id,
                service_id=service_id,
                notes=notes,
            )
        )
        self.issue_for_booking(booking)
        self.logger.info("guest_booking_created", booking_id=booking.id, user_id=guest.id)
        return booking

    def _find_or_create_guest(self, email: str, first_name: Optional[str]) -> User:
        existing = self.store.get_user_by_email(email)
        if existing:
            if not existing.is_guest:
                raise ConflictError("this email is registered; log in to make a booking")
            return existing
        prefix = email.strip().lower().partition("@")[0]
        return self.store.create_user(
            email,
            username=f"guest_{prefix}_{uuid.uuid4().hex[:8]}",
            first_name=first_name,
            is_guest=True,
        )

    def _overlaps(self, provider_id: str, start_time: datetime, end_time: datetime) -> bool:
        for status in _SLOT_HOLDING:
            for other in self.store.list_bookings(status):
                if (
                    other.provider_id == provider_id
                    and other.start_time < end_time
                    and start_time < other.end_time
                ):
                    return True
        return False

    def issue_for_booking(self, booking: Booking) -> str:
        """Mint the guest link for a freshly created booking and mail it."""
        ttl = (booking.end_time + self.grace) - self.clock.now()
        if ttl <= timedelta(0):
            raise BadRequestError(
                "booking window has already closed", detail={"booking_id": booking.id}
            )
        token = self.tokens.create(TokenPurpose.GUEST_BOOKING_ACCESS, booking.id, ttl)
        customer = self.store.get_user(booking.customer_id)
        if customer:
            self.notifications.publish(
                MailEvent(
                    to=customer.email,
                    subject="Confirm your booking",
                    template="guest_booking_access",
                    variables={
                        "start_time": booking.start_time.isoformat(),
                        "confirm_url": f"{self.frontend_url}/bookings/guest#token={token}",
                    },
                )
            )
        return token

    def confirm(self, token: Optional[str]) -> Booking:
        booking_id = self.tokens.validate_and_consume(TokenPurpose.GUEST_BOOKING_ACCESS, token)
        booking = self._load(booking_id)
        now = self.clock.now()
        target = self.state_machine.next_status(booking, BookingEvent.GUEST_TOKEN_CONSUMED, now)
        updated = self.store.update_booking_status(booking.id, BookingStatus.PENDING, target, now)
        if updated is None:
            # status moved under us (cancelled or swept) after we read it
            current = self._load(booking_id)
            if current.status is BookingStatus.EXPIRED:
                raise self.state_machine.expired_error(current)
            raise BookingNotPendingError(
                f"booking is {current.status.value.lower()}",
                detail={"booking_id": booking_id, "status": current.status.value},
            )
        if target is BookingStatus.EXPIRED:
            self.logger.warning("guest_confirm_after_start", booking_id=booking_id)
            raise self.state_machine.expired_error(updated)

        self.logger.info("guest_booking_confirmed", booking_id=booking_id)
        customer = self.store.get_user(updated.customer_id)
        if customer:
            self.notifications.publish(
                MailEvent(
                    to=customer.email,
                    subject="Your booking is confirmed",
                    template="booking_confirmed",
                    variables={
                        "booking_id": updated.id,
                        "start_time": updated.start_time.isoformat(),
                    },
                )
            )
        return updated

    def view(self, token: Optional[str]) -> GuestBookingView:
        """Show the booking behind a guest link without consuming it."""
        record = self.tokens.peek(TokenPurpose.GUEST_BOOKING_ACCESS, token, allow_consumed=True)
        booking = self._load(record.owner_id)
        now = self.clock.now()
        if self.state_machine.is_elapsed(booking, now):
            booking = self._expire(booking, now) or self._load(record.owner_id)
        return GuestBookingView(
            booking=booking,
            token_consumed=record.is_consumed,
            token_expires_at=record.expires_at,
        )

    def expire_elapsed(self, now: Optional[datetime] = None) -> List[Booking]:
        """Move every PENDING booking whose window has passed to EXPIRED."""
        now = now or self.clock.now()
        expired: List[Booking] = []
        for booking in self.store.list_bookings(BookingStatus.PENDING):
            if not self.state_machine.is_elapsed(booking, now):
                continue
            updated = self._expire(booking, now)
            if updated:
                expired.append(updated)
        if expired:
            self.logger.info("pending_bookings_expired", count=len(expired))
        return expired

    def _expire(self, booking: Booking, now: datetime) -> Optional[Booking]:
        target = self.state_machine.next_status(booking, BookingEvent.WINDOW_ELAPSED, now)
        return self.store.update_booking_status(booking.id, BookingStatus.PENDING, target, now)

    def _load(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            self.logger.warning("guest_token_orphaned", booking_id=booking_id)
            raise BookingNotFoundError("booking not found", detail={"booking_id": booking_id})
        return booking


__all__ = ["GuestAccessCoordinator", "GuestBookingView"]
