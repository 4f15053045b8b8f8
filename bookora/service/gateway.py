from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import FrozenSet, Optional, Union

from bookora.logging import get_logger
from bookora.service.errors import InvalidTokenError
from bookora.service.signing import SignedTokenCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    roles: FrozenSet[str]
    is_guest: bool = False

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class Authenticated:
    principal: Principal


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Rejected:
    reason: str


AuthResult = Union[Authenticated, Anonymous, Rejected]

# identity for the current request; never shared across requests
principal_var: ContextVar[Optional[Principal]] = ContextVar("principal", default=None)


def current_principal() -> Optional[Principal]:
    return principal_var.get()


class AuthenticationGateway:
    """Turns an ``Authorization`` header into an explicit result.

    Never raises for bad credentials; the caller decides per endpoint whether
    ``Anonymous`` or ``Rejected`` is acceptable.
    """

    def __init__(self, codec: SignedTokenCodec, store) -> None:
        self.codec = codec
        self.store = store

    def authenticate(self, authorization: Optional[str]) -> AuthResult:
        if not authorization or not authorization.strip():
            return Anonymous()
        scheme, _, credential = authorization.strip().partition(" ")
        credential = credential.strip()
        if scheme.lower() != "bearer" or not credential:
            logger.debug("auth_header_unsupported_scheme")
            return Rejected("unsupported_scheme")
        try:
            claims = self.codec.verify(credential)
        except InvalidTokenError as exc:
            reason = exc.error_code if exc.error_code != "invalid_token" else type(exc).__name__
            logger.info("access_token_rejected", reason=reason)
            return Rejected(reason)
        user = self.store.get_user(claims.subject)
        if not user or not user.is_active:
            logger.info("access_token_unknown_subject", user_id=claims.subject)
            return Rejected("unknown_subject")
        return Authenticated(
            Principal(
                user_id=user.id,
                roles=frozenset(claims.roles),
                is_guest=claims.is_guest,
            )
        )


__all__ = [
    "Principal",
    "Authenticated",
    "Anonymous",
    "Rejected",
    "AuthResult",
    "AuthenticationGateway",
    "principal_var",
    "current_principal",
]
