"""Guest booking links from issue through confirmation and expiry."""

from datetime import timedelta

import pytest

from bookora.service.errors import (
    BadRequestError,
    BookingAlreadyExpiredError,
    BookingNotFoundError,
    BookingNotPendingError,
    ConflictError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    WrongTokenPurposeError,
)
from bookora.storage.models import BookingStatus, TokenPurpose


@pytest.fixture
def guest(make_user):
    return make_user("guest@example.com", password=None, verified=False, is_guest=True)


@pytest.fixture
def guest_access(runtime):
    return runtime.guest_access


class TestIssue:
    def test_issue_mails_link_to_customer(self, guest_access, guest, make_booking, mail):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        event = mail.last("guest_booking_access")
        assert event.to == "guest@example.com"
        assert mail.token_from("guest_booking_access") == token

    def test_token_lives_until_end_plus_grace(self, guest_access, runtime, guest, make_booking):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        record = runtime.opaque_tokens.peek(TokenPurpose.GUEST_BOOKING_ACCESS, token)
        grace = timedelta(days=runtime.settings.guest_token_grace_days)
        assert record.expires_at == booking.end_time + grace
        assert record.owner_id == booking.id

    def test_closed_window_cannot_be_issued(self, guest_access, guest, make_booking, clock, runtime):
        booking = make_booking(guest.id, starts_in=timedelta(hours=1))
        clock.advance(days=runtime.settings.guest_token_grace_days + 1)
        with pytest.raises(BadRequestError):
            guest_access.issue_for_booking(booking)


class TestCreate:
    def test_creates_guest_and_mails_link(self, guest_access, store, clock, mail):
        start = clock.now() + timedelta(days=1)
        booking = guest_access.create_booking(
            "New.Guest@example.com", start, start + timedelta(hours=1), first_name="Nia"
        )
        guest = store.get_user(booking.customer_id)
        assert guest.is_guest and guest.email == "new.guest@example.com"
        assert guest.username.startswith("guest_new.guest_")
        assert booking.status is BookingStatus.PENDING
        assert mail.last("guest_booking_access").to == "new.guest@example.com"

    def test_existing_guest_is_reused(self, guest_access, guest, clock):
        start = clock.now() + timedelta(days=1)
        first = guest_access.create_booking(guest.email, start, start + timedelta(hours=1))
        later = start + timedelta(days=1)
        second = guest_access.create_booking(guest.email, later, later + timedelta(hours=1))
        assert first.customer_id == second.customer_id == guest.id

    def test_registered_address_is_refused(self, guest_access, make_user, clock):
        make_user("member@example.com")
        start = clock.now() + timedelta(days=1)
        with pytest.raises(ConflictError):
            guest_access.create_booking("member@example.com", start, start + timedelta(hours=1))

    def test_naive_times_are_utc(self, guest_access, clock):
        start = (clock.now() + timedelta(days=1)).replace(tzinfo=None)
        booking = guest_access.create_booking("g@example.com", start, start + timedelta(hours=1))
        assert booking.start_time.tzinfo is not None

    @pytest.mark.parametrize(
        "starts_in, duration",
        [(timedelta(hours=-1), timedelta(hours=2)), (timedelta(days=1), timedelta(0))],
    )
    def test_bad_window(self, guest_access, store, clock, starts_in, duration):
        start = clock.now() + starts_in
        with pytest.raises(BadRequestError):
            guest_access.create_booking("g@example.com", start, start + duration)
        assert store.get_user_by_email("g@example.com") is None

    def test_provider_overlap_but_not_adjacent(self, guest_access, clock):
        start = clock.now() + timedelta(days=1)
        end = start + timedelta(hours=1)
        guest_access.create_booking("a@example.com", start, end, provider_id="p1")
        with pytest.raises(ConflictError):
            guest_access.create_booking(
                "b@example.com", start + timedelta(minutes=30), end, provider_id="p1"
            )
        guest_access.create_booking("b@example.com", end, end + timedelta(hours=1), provider_id="p1")
        guest_access.create_booking("c@example.com", start, end, provider_id="p2")


class TestConfirm:
    def test_confirm_before_start(self, guest_access, store, guest, make_booking, clock, mail):
        booking = make_booking(guest.id, starts_in=timedelta(hours=24))
        token = guest_access.issue_for_booking(booking)
        clock.advance(hours=1)

        confirmed = guest_access.confirm(token)

        assert confirmed.status is BookingStatus.CONFIRMED
        assert store.get_booking(booking.id).status is BookingStatus.CONFIRMED
        assert mail.last("booking_confirmed").variables["booking_id"] == booking.id

    def test_second_confirm_is_refused_and_status_kept(self, guest_access, store, guest, make_booking):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        guest_access.confirm(token)
        with pytest.raises(TokenAlreadyConsumedError):
            guest_access.confirm(token)
        assert store.get_booking(booking.id).status is BookingStatus.CONFIRMED

    def test_cancelled_booking_is_not_confirmed(self, guest_access, store, guest, make_booking, clock):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        store.update_booking_status(
            booking.id, BookingStatus.PENDING, BookingStatus.CANCELLED, clock.now()
        )
        with pytest.raises(BookingNotPendingError):
            guest_access.confirm(token)
        assert store.get_booking(booking.id).status is BookingStatus.CANCELLED

    def test_confirm_after_start_records_expiry(self, guest_access, store, guest, make_booking, clock):
        booking = make_booking(guest.id, starts_in=timedelta(hours=2))
        token = guest_access.issue_for_booking(booking)
        clock.advance(hours=2, minutes=1)
        with pytest.raises(BookingAlreadyExpiredError):
            guest_access.confirm(token)
        assert store.get_booking(booking.id).status is BookingStatus.EXPIRED

    def test_confirm_after_sweep_reports_expiry(self, guest_access, store, guest, make_booking, clock):
        booking = make_booking(guest.id, starts_in=timedelta(hours=1))
        token = guest_access.issue_for_booking(booking)
        clock.advance(hours=3)
        assert [b.id for b in guest_access.expire_elapsed()] == [booking.id]
        with pytest.raises(BookingAlreadyExpiredError):
            guest_access.confirm(token)
        assert store.get_booking(booking.id).status is BookingStatus.EXPIRED

    def test_confirm_losing_race_to_sweep(self, guest_access, store, guest, make_booking, monkeypatch):
        booking = make_booking(guest.id, starts_in=timedelta(hours=24))
        token = guest_access.issue_for_booking(booking)
        original = store.update_booking_status

        def swept_first(booking_id, expected, new_status, now):
            original(booking_id, BookingStatus.PENDING, BookingStatus.EXPIRED, now)
            return original(booking_id, expected, new_status, now)

        monkeypatch.setattr(store, "update_booking_status", swept_first)
        with pytest.raises(BookingAlreadyExpiredError):
            guest_access.confirm(token)

    def test_expired_link(self, guest_access, store, guest, make_booking, clock, runtime):
        booking = make_booking(guest.id, starts_in=timedelta(hours=1))
        token = guest_access.issue_for_booking(booking)
        clock.advance(days=runtime.settings.guest_token_grace_days, hours=3)
        with pytest.raises(TokenExpiredError):
            guest_access.confirm(token)
        assert store.get_booking(booking.id).status is BookingStatus.PENDING

    def test_other_purpose_token_is_refused(self, guest_access, runtime, guest, make_booking):
        booking = make_booking(guest.id)
        token = runtime.opaque_tokens.create(
            TokenPurpose.PASSWORD_RESET, booking.id, timedelta(hours=1)
        )
        with pytest.raises(WrongTokenPurposeError):
            guest_access.confirm(token)

    def test_orphaned_token(self, guest_access, runtime):
        token = runtime.opaque_tokens.create(
            TokenPurpose.GUEST_BOOKING_ACCESS, "missing-booking", timedelta(hours=1)
        )
        with pytest.raises(BookingNotFoundError):
            guest_access.confirm(token)


class TestView:
    def test_view_does_not_consume(self, guest_access, guest, make_booking):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        view = guest_access.view(token)
        assert view.booking.id == booking.id
        assert view.token_consumed is False
        assert guest_access.confirm(token).status is BookingStatus.CONFIRMED

    def test_view_after_confirm(self, guest_access, guest, make_booking):
        booking = make_booking(guest.id)
        token = guest_access.issue_for_booking(booking)
        guest_access.confirm(token)
        view = guest_access.view(token)
        assert view.token_consumed is True
        assert view.booking.status is BookingStatus.CONFIRMED

    def test_view_expires_elapsed_pending_booking(self, guest_access, store, guest, make_booking, clock):
        booking = make_booking(guest.id, starts_in=timedelta(hours=1))
        token = guest_access.issue_for_booking(booking)
        clock.advance(hours=3)
        view = guest_access.view(token)
        assert view.booking.status is BookingStatus.EXPIRED
        assert store.get_booking(booking.id).status is BookingStatus.EXPIRED


class TestSweep:
    def test_expire_elapsed_only_touches_pending_past_end(
        self, guest_access, store, guest, make_booking, clock
    ):
        elapsed = make_booking(guest.id, starts_in=timedelta(hours=1))
        upcoming = make_booking(guest.id, starts_in=timedelta(days=3))
        confirmed = make_booking(guest.id, starts_in=timedelta(hours=1))
        guest_access.confirm(guest_access.issue_for_booking(confirmed))

        clock.advance(hours=3)
        swept = guest_access.expire_elapsed()

        assert [b.id for b in swept] == [elapsed.id]
        assert store.get_booking(elapsed.id).status is BookingStatus.EXPIRED
        assert store.get_booking(upcoming.id).status is BookingStatus.PENDING
        assert store.get_booking(confirmed.id).status is BookingStatus.CONFIRMED

    def test_maintenance_reports_expired_bookings(self, runtime, guest, make_booking, clock):
        make_booking(guest.id, starts_in=timedelta(hours=1))
        clock.advance(hours=3)
        assert runtime.run_maintenance()["bookings_expired"] == 1
        assert runtime.run_maintenance()["bookings_expired"] == 0
