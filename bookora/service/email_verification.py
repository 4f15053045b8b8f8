from __future__ import annotations

from datetime import timedelta
from typing import Optional

from bookora.logging import get_logger
from bookora.service.errors import NotFoundError
from bookora.service.notifications import MailEvent, NotificationSink
from bookora.service.opaque_tokens import OpaqueTokenStore
from bookora.storage.models import TokenPurpose, User

logger = get_logger(__name__)


class EmailVerificationCoordinator:
    """Verification links are single-use and latest-wins.

    Issuing a new link discards every outstanding one for the same user, so
    at most one unconsumed verification token exists per account.
    """

    def __init__(
        self,
        store,
        tokens: OpaqueTokenStore,
        notifications: NotificationSink,
        *,
        ttl: timedelta,
        frontend_url: str,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifications = notifications
        self.ttl = ttl
        self.frontend_url = frontend_url.rstrip("/")

    def request(self, user: User) -> str:
        self.tokens.discard_for_owner(TokenPurpose.EMAIL_VERIFICATION, user.id)
        token = self.tokens.create(TokenPurpose.EMAIL_VERIFICATION, user.id, self.ttl)
        self.notifications.publish(
            MailEvent(
                to=user.email,
                subject="Verify your email address",
                template="email_verification",
                variables={
                    "first_name": user.first_name or "",
                    "ttl_days": self.ttl.days,
                    "verify_url": f"{self.frontend_url}/verify-email#token={token}",
                },
            )
        )
        logger.info("email_verification_requested", user_id=user.id)
        return token

    def resend(self, email: str) -> Optional[str]:
        user = self.store.get_user_by_email(email)
        if not user or user.is_guest or user.is_email_verified:
            logger.info("email_verification_resend_skipped")
            return None
        return self.request(user)

    def complete(self, token: Optional[str]) -> User:
        user_id = self.tokens.validate_and_consume(TokenPurpose.EMAIL_VERIFICATION, token)
        user = self.store.mark_email_verified(user_id)
        if not user:
            logger.warning("email_verification_missing_user", user_id=user_id)
            raise NotFoundError("user not found")
        logger.info("email_verified", user_id=user.id)
        return user


__all__ = ["EmailVerificationCoordinator"]
