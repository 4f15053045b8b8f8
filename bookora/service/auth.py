from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bookora.clock import ClockSource, SystemClock
from bookora.logging import get_logger
from bookora.service.errors import (
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidTokenError,
    TokenNotFoundError,
)
from bookora.service.passwords import PasswordHasher, validate_password_strength
from bookora.service.refresh_tokens import RefreshTokenStore
from bookora.service.signing import AccessTokenClaims, SignedTokenCodec
from bookora.storage.models import User


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    user_id: str
    lineage_id: str
    token_type: str = "Bearer"


class TokenAuthority:
    """Issues access/refresh pairs and drives rotation and revocation.

    Access tokens are stateless; ending a session means revoking the refresh
    lineage, after which the outstanding access token lives out its short TTL.
    """

    def __init__(
        self,
        store,
        codec: SignedTokenCodec,
        refresh_tokens: RefreshTokenStore,
        hasher: PasswordHasher,
        *,
        access_ttl: timedelta,
        require_verified_email: bool = True,
        clock: Optional[ClockSource] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher
        self.access_ttl = access_ttl
        self.require_verified_email = require_verified_email
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        # verify against a real hash when the account is missing to even out timing
        self._dummy_hash = hasher.hash("bookora-login-timing-pad")

    def _access_token_for(self, user: User) -> tuple[str, AccessTokenClaims]:
        claims = AccessTokenClaims.build(
            user.id,
            user.roles,
            self.clock.now(),
            self.access_ttl,
            is_guest=user.is_guest,
        )
        return self.codec.issue(claims), claims

    def issue_pair(self, user: User) -> TokenPair:
        access, claims = self._access_token_for(user)
        refresh = self.refresh_tokens.start_lineage(user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh.raw,
            access_expires_at=claims.expires_at,
            refresh_expires_at=refresh.record.expires_at,
            user_id=user.id,
            lineage_id=refresh.record.lineage_id,
        )

    def signup(
        self, email: str, password: str, *, first_name: Optional[str] = None
    ) -> User:
        """Create an unverified account with a password; no tokens are issued.

        Guest records hold their address too, so any existing user with the
        email is a conflict.
        """
        validate_password_strength(password)
        if self.store.get_user_by_email(email):
            self.logger.info("signup_email_taken")
            raise ConflictError("email already registered")
        user = self.store.create_user(email, first_name=first_name)
        self.store.save_password(user.id, self.hasher.hash(password))
        self.logger.info("user_signed_up", user_id=user.id)
        return user

    def rotate(self, presented_refresh_token: Optional[str]) -> TokenPair:
        successor = self.refresh_tokens.rotate(presented_refresh_token)
        record = successor.record
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            # the account vanished or was disabled mid-session
            self.refresh_tokens.revoke_lineage(record.lineage_id)
            self.logger.warning(
                "refresh_for_unavailable_user",
                user_id=record.user_id,
                lineage_id=record.lineage_id,
            )
            raise TokenNotFoundError("refresh token not recognised")
        access, claims = self._access_token_for(user)
        return TokenPair(
            access_token=access,
            refresh_token=successor.raw,
            access_expires_at=claims.expires_at,
            refresh_expires_at=record.expires_at,
            user_id=user.id,
            lineage_id=record.lineage_id,
        )

    def revoke(self, lineage_id: str) -> int:
        return self.refresh_tokens.revoke_lineage(lineage_id)

    def revoke_all_for_user(self, user_id: str) -> int:
        return self.refresh_tokens.revoke_all_for_user(user_id)

    def logout(self, presented_refresh_token: Optional[str]) -> bool:
        """Revoke the lineage behind a presented refresh token, if any."""
        if not presented_refresh_token:
            return False
        try:
            record = self.refresh_tokens.lookup(presented_refresh_token)
        except InvalidTokenError:
            self.logger.info("logout_with_malformed_token")
            return False
        if record is None:
            return False
        self.revoke(record.lineage_id)
        self.logger.info("logout", user_id=record.user_id, lineage_id=record.lineage_id)
        return True

    def login(self, email: str, password: str) -> TokenPair:
        user = self.store.get_user_by_email(email)
        stored_hash = self.store.get_password_hash(user.id) if user else None
        if not user or not stored_hash:
            self.hasher.verify(self._dummy_hash, password)
            self.logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError("invalid credentials")
        if not self.hasher.verify(stored_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        if not user.is_active or user.is_guest:
            self.logger.info("login_failed", reason="account_unavailable", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        if self.require_verified_email and not user.is_email_verified:
            self.logger.info("login_failed", reason="email_not_verified", user_id=user.id)
            raise EmailNotVerifiedError("email address has not been verified")
        pair = self.issue_pair(user)
        self.logger.info("login_succeeded", user_id=user.id, lineage_id=pair.lineage_id)
        return pair

    def active_session_count(self, user_id: str) -> int:
        return self.refresh_tokens.active_count(user_id)


__all__ = ["TokenAuthority", "TokenPair"]
