from __future__ import annotations

from datetime import datetime
from enum import Enum

from bookora.service.errors import (
    BookingAlreadyExpiredError,
    BookingNotPendingError,
    InvalidBookingTransitionError,
)
from bookora.storage.models import Booking, BookingStatus


class BookingEvent(str, Enum):
    GUEST_TOKEN_CONSUMED = "GUEST_TOKEN_CONSUMED"
    WINDOW_ELAPSED = "WINDOW_ELAPSED"


class BookingStateMachine:
    """Transitions this service owns; everything else is refused.

    PENDING + GUEST_TOKEN_CONSUMED -> CONFIRMED while the start is in the future
    PENDING + GUEST_TOKEN_CONSUMED -> EXPIRED once the start has passed
    PENDING + WINDOW_ELAPSED       -> EXPIRED once the end has passed
    """

    def next_status(self, booking: Booking, event: BookingEvent, now: datetime) -> BookingStatus:
        if booking.status is not BookingStatus.PENDING:
            if event is BookingEvent.GUEST_TOKEN_CONSUMED:
                if booking.status is BookingStatus.EXPIRED:
                    raise self.expired_error(booking)
                raise BookingNotPendingError(
                    f"booking is {booking.status.value.lower()}",
                    detail={"booking_id": booking.id, "status": booking.status.value},
                )
            raise InvalidBookingTransitionError(
                f"cannot apply {event.value} to a {booking.status.value} booking",
                detail={"booking_id": booking.id, "status": booking.status.value},
            )
        if event is BookingEvent.GUEST_TOKEN_CONSUMED:
            if now >= booking.start_time:
                return BookingStatus.EXPIRED
            return BookingStatus.CONFIRMED
        if event is BookingEvent.WINDOW_ELAPSED:
            if now < booking.end_time:
                raise InvalidBookingTransitionError(
                    "booking window has not elapsed",
                    detail={"booking_id": booking.id},
                )
            return BookingStatus.EXPIRED
        raise InvalidBookingTransitionError(f"unknown event {event!r}")

    def is_elapsed(self, booking: Booking, now: datetime) -> bool:
        return booking.status is BookingStatus.PENDING and now >= booking.end_time

    @staticmethod
    def expired_error(booking: Booking) -> BookingAlreadyExpiredError:
        return BookingAlreadyExpiredError(
            "booking start time has passed",
            detail={"booking_id": booking.id},
        )


__all__ = ["BookingEvent", "BookingStateMachine"]
