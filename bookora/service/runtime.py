from __future__ import annotations

import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from bookora.clock import ClockSource, SystemClock
from bookora.config import get_settings, reset_settings_cache
from bookora.logging import get_logger
from bookora.service.auth import TokenAuthority
from bookora.service.email_verification import EmailVerificationCoordinator
from bookora.service.gateway import AuthenticationGateway
from bookora.service.guest_access import GuestAccessCoordinator
from bookora.service.notifications import NotificationSink, build_notification_sink
from bookora.service.opaque_tokens import OpaqueTokenStore
from bookora.service.password_reset import PasswordResetCoordinator
from bookora.service.passwords import Argon2PasswordHasher
from bookora.service.refresh_tokens import RefreshTokenStore
from bookora.service.signing import KeyProvider, SignedTokenCodec
from bookora.storage.memory import MemoryStore
from bookora.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store and every token service for the FastAPI app."""

    def __init__(
        self,
        *,
        clock: Optional[ClockSource] = None,
        notifications: Optional[NotificationSink] = None,
    ):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        s = self.settings
        self.notifications = notifications or build_notification_sink(s)
        self.hasher = Argon2PasswordHasher()
        self.codec = SignedTokenCodec(
            KeyProvider.from_settings(s),
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            clock=self.clock,
            leeway=timedelta(seconds=s.clock_skew_seconds),
        )
        self.opaque_tokens = OpaqueTokenStore(self.store, clock=self.clock)
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            timedelta(minutes=s.refresh_token_ttl_minutes),
            clock=self.clock,
        )
        self.auth = TokenAuthority(
            self.store,
            self.codec,
            self.refresh_tokens,
            self.hasher,
            access_ttl=timedelta(minutes=s.access_token_ttl_minutes),
            require_verified_email=s.require_verified_email,
            clock=self.clock,
        )
        self.gateway = AuthenticationGateway(self.codec, self.store)
        self.guest_access = GuestAccessCoordinator(
            self.store,
            self.opaque_tokens,
            self.notifications,
            grace=timedelta(days=s.guest_token_grace_days),
            frontend_url=s.frontend_url,
            clock=self.clock,
        )
        self.password_reset = PasswordResetCoordinator(
            self.store,
            self.opaque_tokens,
            self.refresh_tokens,
            self.hasher,
            self.notifications,
            ttl=timedelta(hours=s.password_reset_ttl_hours),
            frontend_url=s.frontend_url,
        )
        self.email_verification = EmailVerificationCoordinator(
            self.store,
            self.opaque_tokens,
            self.notifications,
            ttl=timedelta(days=s.email_verification_ttl_days),
            frontend_url=s.frontend_url,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            notification_sink=type(self.notifications).__name__,
            signing_kid=s.jwt_key_id,
        )

    def run_maintenance(self) -> Dict[str, int]:
        """One cleanup sweep: stale tokens and elapsed pending bookings."""
        retention = timedelta(days=self.settings.token_retention_days)
        result = {
            "opaque_tokens_purged": self.opaque_tokens.purge_expired(retention),
            "refresh_tokens_purged": self.refresh_tokens.purge_expired(retention),
            "bookings_expired": len(self.guest_access.expire_elapsed()),
        }
        logger.info("maintenance_completed", **result)
        return result

    def close(self) -> None:
        shutdown = getattr(self.notifications, "shutdown", None)
        if shutdown:
            shutdown(wait=False)
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the Runtime singleton, creating it on first use.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    clock: Optional[ClockSource] = None,
    notifications: Optional[NotificationSink] = None,
) -> Runtime:
    """Rebuild the singleton from a fresh environment read (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(clock=clock, notifications=notifications)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
