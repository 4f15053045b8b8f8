from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bookora.clock import ensure_utc
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT,
        first_name TEXT,
        roles TEXT[] NOT NULL DEFAULT ARRAY['USER'],
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_guest BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS booking (
        id UUID PRIMARY KEY,
        customer_id UUID NOT NULL REFERENCES app_user(id),
        provider_id TEXT,
        service_id TEXT,
        start_time TIMESTAMPTZ NOT NULL,
        end_time TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_booking_status ON booking (status)",
    """
    CREATE TABLE IF NOT EXISTS opaque_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        purpose TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_opaque_token_owner ON opaque_token (purpose, owner_id)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        lineage_id UUID NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        state TEXT NOT NULL,
        predecessor_hash TEXT,
        rotated_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_token_lineage ON refresh_token (lineage_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_token_user ON refresh_token (user_id)",
)

_OPAQUE_COLUMNS = "id, token_hash, purpose, owner_id, issued_at, expires_at, consumed_at"
_REFRESH_COLUMNS = (
    "id, lineage_id, token_hash, user_id, issued_at, expires_at, state, "
    "predecessor_hash, rotated_at, revoked_at"
)
_BOOKING_COLUMNS = (
    "id, customer_id, provider_id, service_id, start_time, end_time, status, "
    "notes, created_at, updated_at"
)
_USER_COLUMNS = (
    "id, email, username, first_name, roles, is_email_verified, is_guest, "
    "is_active, created_at"
)


def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store; conditional updates are single guarded statements."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            first_name=row.get("first_name"),
            roles=tuple(row.get("roles") or ("USER",)),
            is_email_verified=bool(row.get("is_email_verified")),
            is_guest=bool(row.get("is_guest")),
            is_active=bool(row.get("is_active", True)),
            created_at=ensure_utc(row["created_at"]),
        )

    @staticmethod
    def _booking_from_row(row: Dict[str, Any]) -> Booking:
        return Booking(
            id=str(row["id"]),
            customer_id=str(row["customer_id"]),
            provider_id=row.get("provider_id"),
            service_id=row.get("service_id"),
            start_time=ensure_utc(row["start_time"]),
            end_time=ensure_utc(row["end_time"]),
            status=BookingStatus(row["status"]),
            notes=row.get("notes"),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @staticmethod
    def _opaque_from_row(row: Dict[str, Any]) -> OpaqueToken:
        return OpaqueToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            purpose=TokenPurpose(row["purpose"]),
            owner_id=str(row["owner_id"]),
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            consumed_at=_opt_utc(row.get("consumed_at")),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            lineage_id=str(row["lineage_id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            state=RefreshTokenState(row["state"]),
            predecessor_hash=row.get("predecessor_hash"),
            rotated_at=_opt_utc(row.get("rotated_at")),
            revoked_at=_opt_utc(row.get("revoked_at")),
        )

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
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, username, first_name, roles, is_guest, is_email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, normalized, username, first_name, list(roles), is_guest, is_email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"email": normalized}, constraint="uq_user_email"
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET is_email_verified = TRUE
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET is_active = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash, updated_at = now()
                    """,
                    (user_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found", {"user_id": user_id}, constraint="fk_credential_user"
            )

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    # -- bookings --------------------------------------------------------

    def save_booking(self, booking: Booking) -> Booking:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO booking ({_BOOKING_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    provider_id = EXCLUDED.provider_id,
                    service_id = EXCLUDED.service_id,
                    start_time = EXCLUDED.start_time,
                    end_time = EXCLUDED.end_time,
                    status = EXCLUDED.status,
                    notes = EXCLUDED.notes,
                    updated_at = EXCLUDED.updated_at
                RETURNING {_BOOKING_COLUMNS}
                """,
                (
                    booking.id,
                    booking.customer_id,
                    booking.provider_id,
                    booking.service_id,
                    booking.start_time,
                    booking.end_time,
                    booking.status.value,
                    booking.notes,
                    booking.created_at,
                    booking.updated_at,
                ),
            ).fetchone()
        return self._booking_from_row(row)

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_BOOKING_COLUMNS} FROM booking WHERE id = %s", (booking_id,)
            ).fetchone()
        return self._booking_from_row(row) if row else None

    def list_bookings(self, status: Optional[BookingStatus] = None) -> List[Booking]:
        query = f"SELECT {_BOOKING_COLUMNS} FROM booking"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = %s"
            params = (status.value,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._booking_from_row(r) for r in rows]

    def update_booking_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
        now: datetime,
    ) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE booking SET status = %s, updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING {_BOOKING_COLUMNS}
                """,
                (new_status.value, now, booking_id, expected.value),
            ).fetchone()
        return self._booking_from_row(row) if row else None

    # -- opaque tokens ---------------------------------------------------

    def add_opaque_token(self, token: OpaqueToken) -> OpaqueToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO opaque_token ({_OPAQUE_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.purpose.value,
                        token.owner_id,
                        token.issued_at,
                        token.expires_at,
                        token.consumed_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", constraint="uq_opaque_token_hash")
        return token

    def get_opaque_token(self, token_hash: str) -> Optional[OpaqueToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_OPAQUE_COLUMNS} FROM opaque_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._opaque_from_row(row) if row else None

    def consume_opaque_token(
        self, token_hash: str, purpose: TokenPurpose, now: datetime
    ) -> Tuple[ConsumeOutcome, Optional[OpaqueToken]]:
        """Mark the token consumed in one guarded UPDATE.

        When no row is updated the current row is read back only to classify
        the refusal; it cannot turn into a success.
        """
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE opaque_token SET consumed_at = %s
                WHERE token_hash = %s
                  AND purpose = %s
                  AND consumed_at IS NULL
                  AND expires_at > %s
                RETURNING {_OPAQUE_COLUMNS}
                """,
                (now, token_hash, purpose.value, now),
            ).fetchone()
            if row:
                return ConsumeOutcome.CONSUMED, self._opaque_from_row(row)
            current = conn.execute(
                f"SELECT {_OPAQUE_COLUMNS} FROM opaque_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not current:
            return ConsumeOutcome.NOT_FOUND, None
        token = self._opaque_from_row(current)
        if token.purpose != purpose:
            return ConsumeOutcome.WRONG_PURPOSE, token
        if token.is_expired(now):
            return ConsumeOutcome.EXPIRED, token
        return ConsumeOutcome.ALREADY_CONSUMED, token

    def list_opaque_tokens_for_owner(
        self, purpose: TokenPurpose, owner_id: str
    ) -> List[OpaqueToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_OPAQUE_COLUMNS} FROM opaque_token
                WHERE purpose = %s AND owner_id = %s
                ORDER BY issued_at
                """,
                (purpose.value, owner_id),
            ).fetchall()
        return [self._opaque_from_row(r) for r in rows]

    def delete_opaque_tokens_for_owner(self, purpose: TokenPurpose, owner_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM opaque_token
                WHERE purpose = %s AND owner_id = %s AND consumed_at IS NULL
                """,
                (purpose.value, owner_id),
            )
            return cur.rowcount

    def purge_opaque_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM opaque_token WHERE expires_at < %s OR consumed_at < %s",
                (cutoff, cutoff),
            )
            return cur.rowcount

    # -- refresh tokens --------------------------------------------------

    def _insert_refresh(self, conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            f"""
            INSERT INTO refresh_token ({_REFRESH_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.lineage_id,
                record.token_hash,
                record.user_id,
                record.issued_at,
                record.expires_at,
                record.state.value,
                record.predecessor_hash,
                record.rotated_at,
                record.revoked_at,
            ),
        )

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", constraint="uq_refresh_token_hash"
            )
        return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_hash: str, successor: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Retire ``old_hash`` and insert ``successor`` atomically.

        The guarded UPDATE takes the row lock; a concurrent rotation of the
        same record blocks, then re-evaluates ``state = 'ACTIVE'`` and updates
        nothing.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token SET state = %s, rotated_at = %s
                        WHERE token_hash = %s AND state = %s
                        RETURNING id
                        """,
                        (
                            RefreshTokenState.ROTATED.value,
                            now,
                            old_hash,
                            RefreshTokenState.ACTIVE.value,
                        ),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", constraint="uq_refresh_token_hash"
            )
        return True

    def list_lineage(self, lineage_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_REFRESH_COLUMNS} FROM refresh_token
                WHERE lineage_id = %s ORDER BY issued_at
                """,
                (lineage_id,),
            ).fetchall()
        return [self._refresh_from_row(r) for r in rows]

    def revoke_lineage(self, lineage_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET state = %s, revoked_at = %s
                WHERE lineage_id = %s AND state <> %s
                """,
                (RefreshTokenState.REVOKED.value, now, lineage_id, RefreshTokenState.REVOKED.value),
            )
            return cur.rowcount

    def revoke_user_lineages(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET state = %s, revoked_at = %s
                WHERE user_id = %s AND state <> %s
                """,
                (RefreshTokenState.REVOKED.value, now, user_id, RefreshTokenState.REVOKED.value),
            )
            return cur.rowcount

    def count_active_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM refresh_token
                WHERE user_id = %s AND state = %s AND expires_at > %s
                """,
                (user_id, RefreshTokenState.ACTIVE.value, now),
            ).fetchone()
        return int(row["n"]) if row else 0

    def purge_refresh_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s OR revoked_at < %s",
                (cutoff, cutoff),
            )
            return cur.rowcount


__all__ = ["PostgresStore"]
