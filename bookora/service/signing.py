from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from bookora.clock import ClockSource, SystemClock
from bookora.config import MIN_SECRET_BYTES, Settings
from bookora.logging import get_logger
from bookora.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
)

logger = get_logger(__name__)

ALGORITHM = "HS256"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_timestamp(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedTokenError("token timestamp is not numeric")
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedTokenError("token timestamp out of range")


@dataclass(frozen=True)
class AccessTokenClaims:
    """Identity carried inside an access token.

    Instants are truncated to whole seconds on construction via ``build`` so
    that a decoded token compares equal to the claims it was issued from.
    """

    subject: str
    roles: Tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    is_guest: bool = False

    @classmethod
    def build(
        cls,
        subject: str,
        roles,
        issued_at: datetime,
        ttl: timedelta,
        *,
        is_guest: bool = False,
    ) -> "AccessTokenClaims":
        issued = issued_at.astimezone(timezone.utc).replace(microsecond=0)
        return cls(
            subject=subject,
            roles=tuple(roles),
            issued_at=issued,
            expires_at=issued + ttl,
            is_guest=is_guest,
        )


class KeyProvider:
    """Signing keys addressed by key id.

    ``current`` signs new tokens; ``previous`` keys are accepted for
    verification only so a key can be rotated without logging everyone out.
    """

    def __init__(
        self,
        current_kid: str,
        current_secret: str,
        previous: Optional[Mapping[str, str]] = None,
    ) -> None:
        keys: Dict[str, bytes] = {}
        for kid, secret in {**(previous or {}), current_kid: current_secret}.items():
            encoded = secret.encode("utf-8")
            if len(encoded) < MIN_SECRET_BYTES:
                raise ValueError(f"signing key {kid!r} is shorter than {MIN_SECRET_BYTES} bytes")
            keys[kid] = encoded
        self._keys = keys
        self.current_kid = current_kid

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyProvider":
        return cls(
            settings.jwt_key_id,
            settings.jwt_secret,
            settings.previous_signing_keys(),
        )

    def signing_key(self) -> Tuple[str, bytes]:
        return self.current_kid, self._keys[self.current_kid]

    def verification_key(self, kid: Any) -> Optional[bytes]:
        if not isinstance(kid, str) or not kid:
            return None
        return self._keys.get(kid)


class SignedTokenCodec:
    """Compact HS256 tokens: ``base64url(header).base64url(claims).base64url(sig)``."""

    def __init__(
        self,
        keys: KeyProvider,
        *,
        issuer: str,
        audience: str,
        clock: Optional[ClockSource] = None,
        leeway: timedelta = timedelta(seconds=5),
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.audience = audience
        self.clock = clock or SystemClock()
        self.leeway = leeway

    def issue(self, claims: AccessTokenClaims) -> str:
        kid, key = self.keys.signing_key()
        header = {"alg": ALGORITHM, "typ": "JWT", "kid": kid}
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.subject,
            "roles": list(claims.roles),
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
            "guest": claims.is_guest,
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def verify(self, token: str) -> AccessTokenClaims:
        """Return the claims of a valid token.

        Signature is checked before anything in the payload is trusted; expiry
        is checked last.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        # the signature segment keeps any stray dots so it fails the digest check
        parts = token.split(".", 2)
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedTokenError("token header is not valid JSON")
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")

        if not isinstance(header.get("alg"), str) or not isinstance(header.get("kid"), str):
            raise MalformedTokenError("token header alg and kid must be strings")

        # Algorithm confusion and unknown keys are treated as forgery
        if header.get("alg") != ALGORITHM:
            logger.warning("access_token_bad_algorithm", alg=header.get("alg"))
            raise InvalidSignatureError("unsupported signing algorithm")
        key = self.keys.verification_key(header.get("kid"))
        if key is None:
            logger.warning("access_token_unknown_kid", kid=header.get("kid"))
            raise InvalidSignatureError("unknown signing key")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )
        # compare the encoded form so padding-bit edits are not normalized away
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidSignatureError("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise MalformedTokenError("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("unexpected audience")

        subject = payload.get("sub")
        roles = payload.get("roles", [])
        if not isinstance(subject, str) or not subject:
            raise MalformedTokenError("token subject missing")
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise MalformedTokenError("token roles malformed")
        claims = AccessTokenClaims(
            subject=subject,
            roles=tuple(roles),
            issued_at=_from_timestamp(payload.get("iat")),
            expires_at=_from_timestamp(payload.get("exp")),
            is_guest=bool(payload.get("guest", False)),
        )

        if self.clock.now() >= claims.expires_at + self.leeway:
            raise TokenExpiredError("access token expired")
        return claims


__all__ = ["AccessTokenClaims", "KeyProvider", "SignedTokenCodec", "ALGORITHM"]
