from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import List, NoReturn, Optional

from bookora.clock import ClockSource, SystemClock
from bookora.logging import get_logger, token_fingerprint
from bookora.service.errors import (
    MalformedTokenError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
    WrongTokenPurposeError,
)
from bookora.storage.models import ConsumeOutcome, OpaqueToken, TokenPurpose


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _parse_token(raw: Optional[str]) -> str:
    """Accept only canonical UUID strings; anything else never reaches storage."""
    if not isinstance(raw, str) or len(raw) != 36:
        raise MalformedTokenError("token is not well formed")
    try:
        parsed = uuid.UUID(raw)
    except ValueError:
        raise MalformedTokenError("token is not well formed")
    if str(parsed) != raw.lower():
        raise MalformedTokenError("token is not well formed")
    return raw.lower()


class OpaqueTokenStore:
    """Single-use bearer tokens shared by reset, verification and guest flows.

    Token values are random UUID4 strings (122 bits of entropy). Only their
    SHA-256 digest is persisted. Consumption is a single conditional update in
    the backing store, so concurrent validations of one token see exactly one
    success.
    """

    def __init__(self, store, clock: Optional[ClockSource] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)

    def create(self, purpose: TokenPurpose, owner_id: str, ttl: timedelta) -> str:
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        now = self.clock.now()
        raw = str(uuid.uuid4())
        record = OpaqueToken(
            id=str(uuid.uuid4()),
            token_hash=hash_token(raw),
            purpose=purpose,
            owner_id=owner_id,
            issued_at=now,
            expires_at=now + ttl,
        )
        self.store.add_opaque_token(record)
        self.logger.info(
            "opaque_token_issued",
            token_purpose=purpose.value,
            owner_id=owner_id,
            expires_at=record.expires_at.isoformat(),
            token_fingerprint=token_fingerprint(raw),
        )
        return raw

    def validate_and_consume(self, purpose: TokenPurpose, raw: Optional[str]) -> str:
        """Consume ``raw`` and return its owner id, or raise why it was refused."""
        normalized = _parse_token(raw)
        outcome, record = self.store.consume_opaque_token(
            hash_token(normalized), purpose, self.clock.now()
        )
        if outcome is ConsumeOutcome.CONSUMED and record is not None:
            self.logger.info(
                "opaque_token_consumed",
                token_purpose=purpose.value,
                owner_id=record.owner_id,
                token_fingerprint=token_fingerprint(normalized),
            )
            return record.owner_id
        self._raise_for(outcome, purpose, normalized)

    def peek(
        self,
        purpose: TokenPurpose,
        raw: Optional[str],
        *,
        allow_consumed: bool = False,
    ) -> OpaqueToken:
        """Read a token without consuming it.

        Only for showing information before the holder commits; the state
        change itself must go through ``validate_and_consume``.
        """
        normalized = _parse_token(raw)
        record = self.store.get_opaque_token(hash_token(normalized))
        if record is None:
            self._raise_for(ConsumeOutcome.NOT_FOUND, purpose, normalized)
        elif record.purpose != purpose:
            self._raise_for(ConsumeOutcome.WRONG_PURPOSE, purpose, normalized)
        elif record.is_expired(self.clock.now()):
            self._raise_for(ConsumeOutcome.EXPIRED, purpose, normalized)
        elif record.is_consumed and not allow_consumed:
            self._raise_for(ConsumeOutcome.ALREADY_CONSUMED, purpose, normalized)
        return record

    def discard_for_owner(self, purpose: TokenPurpose, owner_id: str) -> int:
        """Drop every outstanding token of ``purpose`` for ``owner_id``."""
        removed = self.store.delete_opaque_tokens_for_owner(purpose, owner_id)
        if removed:
            self.logger.info(
                "opaque_tokens_discarded",
                token_purpose=purpose.value,
                owner_id=owner_id,
                count=removed,
            )
        return removed

    def find_active_for_owner(
        self, purpose: TokenPurpose, owner_id: str
    ) -> List[OpaqueToken]:
        now = self.clock.now()
        return [
            t
            for t in self.store.list_opaque_tokens_for_owner(purpose, owner_id)
            if not t.is_consumed and not t.is_expired(now)
        ]

    def purge_expired(self, retention: timedelta) -> int:
        cutoff: datetime = self.clock.now() - retention
        return self.store.purge_opaque_tokens(cutoff)

    def _raise_for(self, outcome: ConsumeOutcome, purpose: TokenPurpose, raw: str) -> NoReturn:
        fingerprint = token_fingerprint(raw)
        if outcome is ConsumeOutcome.NOT_FOUND:
            self.logger.info(
                "opaque_token_not_found", token_purpose=purpose.value, token_fingerprint=fingerprint
            )
            raise TokenNotFoundError("token not found")
        if outcome is ConsumeOutcome.WRONG_PURPOSE:
            self.logger.warning(
                "opaque_token_wrong_purpose", token_purpose=purpose.value, token_fingerprint=fingerprint
            )
            raise WrongTokenPurposeError("token not valid for this action")
        if outcome is ConsumeOutcome.EXPIRED:
            self.logger.warning(
                "opaque_token_expired", token_purpose=purpose.value, token_fingerprint=fingerprint
            )
            raise TokenExpiredError("token expired")
        if outcome is ConsumeOutcome.ALREADY_CONSUMED:
            self.logger.warning(
                "opaque_token_reused", token_purpose=purpose.value, token_fingerprint=fingerprint
            )
            raise TokenAlreadyConsumedError("token already used")
        raise TokenNotFoundError("token not found")


__all__ = ["OpaqueTokenStore", "hash_token"]
