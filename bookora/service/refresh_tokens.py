from __future__ import annotations

import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import List, NoReturn, Optional

from bookora.clock import ClockSource, SystemClock
from bookora.logging import get_logger, token_fingerprint
from bookora.service.errors import (
    MalformedTokenError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenReuseDetectedError,
)
from bookora.storage.models import RefreshTokenRecord, RefreshTokenState

# secrets.token_urlsafe(32) yields 43 url-safe characters
_REFRESH_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedRefreshToken:
    """Plaintext token handed to the client plus the record persisted for it."""

    raw: str
    record: RefreshTokenRecord


class RefreshTokenStore:
    """Rotating refresh tokens grouped into lineages.

    Every successful ``rotate`` retires the presented record and appends its
    successor through one conditional update in the backing store. Presenting
    a retired record, or losing the race on that update, is reuse: the whole
    lineage is revoked.
    """

    def __init__(
        self,
        store,
        ttl: timedelta,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def _new_record(
        self,
        user_id: str,
        lineage_id: str,
        predecessor_hash: Optional[str] = None,
    ) -> IssuedRefreshToken:
        now = self.clock.now()
        raw = secrets.token_urlsafe(32)
        record = RefreshTokenRecord(
            id=str(uuid.uuid4()),
            lineage_id=lineage_id,
            token_hash=hash_refresh_token(raw),
            user_id=user_id,
            issued_at=now,
            expires_at=now + self.ttl,
            predecessor_hash=predecessor_hash,
        )
        return IssuedRefreshToken(raw=raw, record=record)

    def start_lineage(self, user_id: str) -> IssuedRefreshToken:
        issued = self._new_record(user_id, str(uuid.uuid4()))
        self.store.add_refresh_token(issued.record)
        self.logger.info(
            "refresh_lineage_started",
            user_id=user_id,
            lineage_id=issued.record.lineage_id,
        )
        return issued

    def lookup(self, raw: Optional[str]) -> Optional[RefreshTokenRecord]:
        if not isinstance(raw, str) or not _REFRESH_TOKEN_RE.match(raw):
            raise MalformedTokenError("refresh token is not well formed")
        return self.store.get_refresh_token(hash_refresh_token(raw))

    def rotate(self, raw: Optional[str]) -> IssuedRefreshToken:
        """Exchange ``raw`` for its successor in the same lineage."""
        current = self.lookup(raw)
        if current is None:
            self.logger.info("refresh_token_not_found", token_fingerprint=token_fingerprint(raw))
            raise TokenNotFoundError("refresh token not recognised")

        # retired tokens are reuse even when they have also expired
        if current.state is not RefreshTokenState.ACTIVE:
            self._on_reuse(current, reason=f"presented_{current.state.value.lower()}")

        if current.is_expired(self.clock.now()):
            self.logger.info(
                "refresh_token_expired",
                user_id=current.user_id,
                lineage_id=current.lineage_id,
            )
            raise TokenExpiredError("refresh token expired")

        successor = self._new_record(
            current.user_id, current.lineage_id, predecessor_hash=current.token_hash
        )
        swapped = self.store.rotate_refresh_token(
            current.token_hash, successor.record, self.clock.now()
        )
        if not swapped:
            # another request retired this record between our read and write
            self._on_reuse(current, reason="lost_rotation_race")

        self.logger.info(
            "refresh_token_rotated",
            user_id=current.user_id,
            lineage_id=current.lineage_id,
        )
        return successor

    def _on_reuse(self, record: RefreshTokenRecord, *, reason: str) -> NoReturn:
        revoked = self.store.revoke_lineage(record.lineage_id, self.clock.now())
        self.logger.error(
            "refresh_token_reuse_detected",
            security_event=True,
            reason=reason,
            user_id=record.user_id,
            lineage_id=record.lineage_id,
            revoked_records=revoked,
        )
        raise TokenReuseDetectedError(record.lineage_id)

    def revoke_lineage(self, lineage_id: str) -> int:
        count = self.store.revoke_lineage(lineage_id, self.clock.now())
        self.logger.info("refresh_lineage_revoked", lineage_id=lineage_id, count=count)
        return count

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_user_lineages(user_id, self.clock.now())
        self.logger.info("refresh_lineages_revoked_for_user", user_id=user_id, count=count)
        return count

    def lineage(self, lineage_id: str) -> List[RefreshTokenRecord]:
        return self.store.list_lineage(lineage_id)

    def active_count(self, user_id: str) -> int:
        return self.store.count_active_refresh_tokens(user_id, self.clock.now())

    def purge_expired(self, retention: timedelta) -> int:
        return self.store.purge_refresh_tokens(self.clock.now() - retention)


__all__ = ["RefreshTokenStore", "IssuedRefreshToken", "hash_refresh_token"]
