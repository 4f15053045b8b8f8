from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from bookora.logging import get_logger
from bookora.storage.errors import ConstraintViolation
from bookora.storage.models import (
    Booking,
    BookingStatus,
    ConsumeOutcome,
    OpaqueToken,
    RefreshTokenRecord,
    RefreshTokenState,
    TokenPurpose,
    User,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Every read and write holds ``_data_lock``; the two conditional updates
    (``consume_opaque_token`` and ``rotate_refresh_token``) check and mutate
    under a single acquisition so they are linearizable per key. Records are
    handed out as copies so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.bookings: Dict[str, Booking] = {}
        self.opaque_tokens: Dict[str, OpaqueToken] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        roles: Sequence[str] = ("USER",),
        is_guest: bool = False,
        is_email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"email": normalized}, constraint="uq_user_email"
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                first_name=first_name,
                roles=tuple(roles),
                is_guest=is_guest,
                is_email_verified=is_email_verified,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_email_verified = True
            return replace(user)

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = active
            return replace(user)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found", {"user_id": user_id}, constraint="fk_credential_user"
                )
            self.credentials[user_id] = password_hash

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- bookings --------------------------------------------------------

    def save_booking(self, booking: Booking) -> Booking:
        with self._data_lock:
            self.bookings[booking.id] = replace(booking)
            return replace(booking)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._data_lock:
            booking = self.bookings.get(booking_id)
            return replace(booking) if booking else None

    def list_bookings(self, status: Optional[BookingStatus] = None) -> List[Booking]:
        with self._data_lock:
            return [
                replace(b)
                for b in self.bookings.values()
                if status is None or b.status == status
            ]

    def update_booking_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
        now: datetime,
    ) -> Optional[Booking]:
        """Set ``new_status`` only if the booking is still in ``expected``."""
        with self._data_lock:
            booking = self.bookings.get(booking_id)
            if not booking or booking.status != expected:
                return None
            booking.status = new_status
            booking.updated_at = now
            return replace(booking)

    # -- opaque tokens ---------------------------------------------------

    def add_opaque_token(self, token: OpaqueToken) -> OpaqueToken:
        with self._data_lock:
            if token.token_hash in self.opaque_tokens:
                raise ConstraintViolation(
                    "token already exists", constraint="uq_opaque_token_hash"
                )
            self.opaque_tokens[token.token_hash] = replace(token)
            return replace(token)

    def get_opaque_token(self, token_hash: str) -> Optional[OpaqueToken]:
        with self._data_lock:
            token = self.opaque_tokens.get(token_hash)
            return replace(token) if token else None

    def consume_opaque_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Tuple[ConsumeOutcome, Optional[OpaqueToken]]:
        with self._data_lock:
            token = self.opaque_tokens.get(token_hash)
            if token is None:
                return ConsumeOutcome.NOT_FOUND, None
            if token.purpose != purpose:
                return ConsumeOutcome.WRONG_PURPOSE, replace(token)
            if token.is_expired(now):
                return ConsumeOutcome.EXPIRED, replace(token)
            if token.is_consumed:
                return ConsumeOutcome.ALREADY_CONSUMED, replace(token)
            token.consumed_at = now
            return ConsumeOutcome.CONSUMED, replace(token)

    def list_opaque_tokens_for_owner(
        self, purpose: TokenPurpose, owner_id: str
    ) -> List[OpaqueToken]:
        with self._data_lock:
            return sorted(
                (
                    replace(t)
                    for t in self.opaque_tokens.values()
                    if t.purpose == purpose and t.owner_id == owner_id
                ),
                key=lambda t: t.issued_at,
            )

    def delete_opaque_tokens_for_owner(
        self, purpose: TokenPurpose, owner_id: str
    ) -> int:
        """Drop unconsumed tokens; consumed rows stay so replays still read as used."""
        with self._data_lock:
            stale = [
                h
                for h, t in self.opaque_tokens.items()
                if t.purpose == purpose and t.owner_id == owner_id and not t.is_consumed
            ]
            for token_hash in stale:
                self.opaque_tokens.pop(token_hash, None)
            return len(stale)

    def purge_opaque_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                h
                for h, t in self.opaque_tokens.items()
                if t.expires_at < cutoff
                or (t.consumed_at is not None and t.consumed_at < cutoff)
            ]
            for token_hash in stale:
                self.opaque_tokens.pop(token_hash, None)
            return len(stale)

    # -- refresh tokens --------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", constraint="uq_refresh_token_hash"
                )
            self.refresh_tokens[record.token_hash] = replace(record)
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_hash: str, successor: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Replace ``old_hash`` with ``successor`` only if it is still ACTIVE."""
        with self._data_lock:
            current = self.refresh_tokens.get(old_hash)
            if current is None or current.state is not RefreshTokenState.ACTIVE:
                return False
            if successor.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", constraint="uq_refresh_token_hash"
                )
            current.state = RefreshTokenState.ROTATED
            current.rotated_at = now
            self.refresh_tokens[successor.token_hash] = replace(successor)
            return True

    def list_lineage(self, lineage_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return sorted(
                (replace(r) for r in self.refresh_tokens.values() if r.lineage_id == lineage_id),
                key=lambda r: r.issued_at,
            )

    def revoke_lineage(self, lineage_id: str, now: datetime) -> int:
        with self._data_lock:
            return self._revoke_where(lambda r: r.lineage_id == lineage_id, now)

    def revoke_user_lineages(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return self._revoke_where(lambda r: r.user_id == user_id, now)

    def _revoke_where(self, predicate, now: datetime) -> int:
        count = 0
        for record in self.refresh_tokens.values():
            if predicate(record) and record.state is not RefreshTokenState.REVOKED:
                record.state = RefreshTokenState.REVOKED
                record.revoked_at = now
                count += 1
        return count

    def count_active_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.is_active and not r.is_expired(now)
            )

    def purge_refresh_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                h
                for h, r in self.refresh_tokens.items()
                if r.expires_at < cutoff
                or (r.revoked_at is not None and r.revoked_at < cutoff)
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            return len(stale)


__all__ = ["MemoryStore"]
