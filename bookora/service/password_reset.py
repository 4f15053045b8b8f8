from __future__ import annotations

from datetime import timedelta
from typing import Optional

from bookora.logging import get_logger
from bookora.service.errors import NotFoundError
from bookora.service.notifications import MailEvent, NotificationSink
from bookora.service.opaque_tokens import OpaqueTokenStore
from bookora.service.passwords import PasswordHasher, validate_password_strength
from bookora.service.refresh_tokens import RefreshTokenStore
from bookora.storage.models import TokenPurpose

logger = get_logger(__name__)


class PasswordResetCoordinator:
    def __init__(
        self,
        store,
        tokens: OpaqueTokenStore,
        refresh_tokens: RefreshTokenStore,
        hasher: PasswordHasher,
        notifications: NotificationSink,
        *,
        ttl: timedelta,
        frontend_url: str,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher
        self.notifications = notifications
        self.ttl = ttl
        self.frontend_url = frontend_url.rstrip("/")

    def request(self, email: str) -> Optional[str]:
        """Start a reset for ``email``.

        Unknown or guest addresses are ignored without error so the response
        cannot be used to probe for accounts. Only the newest link stays valid.
        """
        user = self.store.get_user_by_email(email)
        if not user or user.is_guest or not user.is_active:
            logger.info("password_reset_requested_unknown")
            return None
        self.tokens.discard_for_owner(TokenPurpose.PASSWORD_RESET, user.id)
        token = self.tokens.create(TokenPurpose.PASSWORD_RESET, user.id, self.ttl)
        self.notifications.publish(
            MailEvent(
                to=user.email,
                subject="Reset your Bookora password",
                template="password_reset",
                variables={
                    "first_name": user.first_name or "",
                    "ttl_hours": int(self.ttl.total_seconds() // 3600),
                    "reset_url": f"{self.frontend_url}/reset-password#token={token}",
                },
            )
        )
        logger.info("password_reset_requested", user_id=user.id)
        return token

    def complete(self, token: Optional[str], new_password: str) -> str:
        """Consume ``token``, store the new hash and end every session."""
        # a weak password must not burn the link
        validate_password_strength(new_password)
        user_id = self.tokens.validate_and_consume(TokenPurpose.PASSWORD_RESET, token)
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        self.store.save_password(user.id, self.hasher.hash(new_password))
        revoked = self.refresh_tokens.revoke_all_for_user(user.id)
        self.tokens.discard_for_owner(TokenPurpose.PASSWORD_RESET, user.id)
        self.notifications.publish(
            MailEvent(
                to=user.email,
                subject="Your Bookora password was changed",
                template="password_changed",
                variables={"first_name": user.first_name or ""},
            )
        )
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return user.id


__all__ = ["PasswordResetCoordinator"]
