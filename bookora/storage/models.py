from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"


class TokenPurpose(str, Enum):
    """What a single-use opaque token authorizes."""

    PASSWORD_RESET = "PASSWORD_RESET"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    GUEST_BOOKING_ACCESS = "GUEST_BOOKING_ACCESS"


class RefreshTokenState(str, Enum):
    ACTIVE = "ACTIVE"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"


class ConsumeOutcome(str, Enum):
    """Result of a conditional consume on an opaque token row."""

    CONSUMED = "CONSUMED"
    NOT_FOUND = "NOT_FOUND"
    WRONG_PURPOSE = "WRONG_PURPOSE"
    EXPIRED = "EXPIRED"
    ALREADY_CONSUMED = "ALREADY_CONSUMED"


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    roles: Tuple[str, ...] = ("USER",)
    is_email_verified: bool = False
    is_guest: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Booking:
    id: str
    customer_id: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus = BookingStatus.PENDING
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        customer_id: str,
        start_time: datetime,
        end_time: datetime,
        *,
        provider_id: Optional[str] = None,
        service_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> "Booking":
        return cls(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            start_time=start_time,
            end_time=end_time,
            provider_id=provider_id,
            service_id=service_id,
            notes=notes,
        )


@dataclass
class OpaqueToken:
    """Single-use bearer capability; only the SHA-256 digest is stored."""

    id: str
    token_hash: str
    purpose: TokenPurpose
    owner_id: str
    issued_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class RefreshTokenRecord:
    """One link in a refresh-token lineage."""

    id: str
    lineage_id: str
    token_hash: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    state: RefreshTokenState = RefreshTokenState.ACTIVE
    predecessor_hash: Optional[str] = None
    rotated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_active(self) -> bool:
        return self.state is RefreshTokenState.ACTIVE
