import base64
import json
from datetime import timedelta

import pytest

from bookora.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
)
from bookora.service.signing import AccessTokenClaims, KeyProvider, SignedTokenCodec

SECRET = "s" * 40
OTHER_SECRET = "o" * 40
_B64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def _codec(clock, keys=None, **kwargs):
    return SignedTokenCodec(
        keys or KeyProvider("k1", SECRET),
        issuer="bookora",
        audience="bookora-clients",
        clock=clock,
        leeway=timedelta(seconds=5),
        **kwargs,
    )


def _claims(clock, ttl=timedelta(minutes=15), roles=("USER",)):
    return AccessTokenClaims.build("user-1", roles, clock.now(), ttl)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestRoundTrip:
    """verify(issue(claims)) returns the same claims."""

    def test_round_trip_preserves_claims(self, clock):
        codec = _codec(clock)
        claims = AccessTokenClaims.build(
            "user-42", ("USER", "PROVIDER"), clock.now(), timedelta(minutes=15), is_guest=True
        )
        assert codec.verify(codec.issue(claims)) == claims

    def test_sub_second_instants_are_truncated(self, clock):
        clock.advance(microseconds=123456)
        claims = _claims(clock)
        assert claims.issued_at.microsecond == 0
        assert _codec(clock).verify(_codec(clock).issue(claims)) == claims

    def test_token_is_three_url_safe_segments(self, clock):
        token = _codec(clock).issue(_claims(clock))
        parts = token.split(".")
        assert len(parts) == 3
        assert all(set(p) <= set(_B64_ALPHABET) for p in parts)

    def test_header_carries_key_id(self, clock):
        token = _codec(clock).issue(_claims(clock))
        header_b64 = token.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT", "kid": "k1"}


class TestTampering:
    def test_every_single_character_change_in_signature_is_rejected(self, clock):
        codec = _codec(clock)
        claims = _claims(clock)
        token = codec.issue(claims)
        head, payload, sig = token.split(".")
        for index, original in enumerate(sig):
            replacement = "A" if original != "A" else "B"
            forged_sig = sig[:index] + replacement + sig[index + 1 :]
            with pytest.raises(InvalidSignatureError):
                codec.verify(f"{head}.{payload}.{forged_sig}")

    def test_dot_in_signature_is_a_signature_failure(self, clock):
        codec = _codec(clock)
        head, payload, sig = codec.issue(_claims(clock)).split(".")
        for index in (0, len(sig) // 2, len(sig) - 1):
            forged_sig = sig[:index] + "." + sig[index + 1 :]
            with pytest.raises(InvalidSignatureError):
                codec.verify(f"{head}.{payload}.{forged_sig}")

    def test_payload_change_is_rejected_before_expiry(self, clock):
        codec = _codec(clock)
        token = codec.issue(_claims(clock, ttl=timedelta(minutes=1)))
        head, _, sig = token.split(".")
        forged_payload = _b64(
            {"iss": "bookora", "aud": "bookora-clients", "sub": "admin", "roles": ["ADMIN"],
             "iat": 0, "exp": 1}
        )
        # already expired forged payload still fails on signature first
        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{head}.{forged_payload}.{sig}")

    def test_token_signed_with_other_key_is_rejected(self, clock):
        other = _codec(clock, keys=KeyProvider("k1", OTHER_SECRET))
        token = other.issue(_claims(clock))
        with pytest.raises(InvalidSignatureError):
            _codec(clock).verify(token)

    def test_alg_none_is_rejected(self, clock):
        token = _codec(clock).issue(_claims(clock))
        _, payload, sig = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT", "kid": "k1"})
        with pytest.raises(InvalidSignatureError):
            _codec(clock).verify(f"{header}.{payload}.{sig}")

    def test_unknown_kid_is_rejected(self, clock):
        token = _codec(clock).issue(_claims(clock))
        _, payload, sig = token.split(".")
        header = _b64({"alg": "HS256", "typ": "JWT", "kid": "k9"})
        with pytest.raises(InvalidSignatureError):
            _codec(clock).verify(f"{header}.{payload}.{sig}")


class TestMalformed:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "..", "a..c"])
    def test_wrong_segment_count(self, clock, token):
        with pytest.raises(MalformedTokenError):
            _codec(clock).verify(token)

    def test_header_not_json(self, clock):
        with pytest.raises(MalformedTokenError):
            _codec(clock).verify("bm90LWpzb24.e30.c2ln")

    @pytest.mark.parametrize(
        "header",
        [
            {"alg": "HS256", "typ": "JWT", "kid": ["k1"]},
            {"alg": "HS256", "typ": "JWT", "kid": {"a": 1}},
            {"alg": "HS256", "typ": "JWT", "kid": 7},
            {"alg": "HS256", "typ": "JWT"},
            {"alg": ["HS256"], "typ": "JWT", "kid": "k1"},
            {"alg": None, "typ": "JWT", "kid": "k1"},
        ],
    )
    def test_non_string_alg_or_kid(self, clock, header):
        _, payload, sig = _codec(clock).issue(_claims(clock)).split(".")
        with pytest.raises(MalformedTokenError):
            _codec(clock).verify(f"{_b64(header)}.{payload}.{sig}")

    def test_verification_key_ignores_unhashable_kid(self):
        keys = KeyProvider("k1", SECRET)
        assert keys.verification_key(["k1"]) is None
        assert keys.verification_key({"k1": 1}) is None

    def test_malformed_is_an_invalid_token(self):
        assert issubclass(MalformedTokenError, InvalidTokenError)


class TestExpiry:
    def test_valid_within_ttl(self, clock):
        codec = _codec(clock)
        token = codec.issue(_claims(clock))
        clock.advance(minutes=14)
        assert codec.verify(token).subject == "user-1"

    def test_skew_tolerance(self, clock):
        codec = _codec(clock)
        token = codec.issue(_claims(clock))
        clock.advance(minutes=15, seconds=4)
        assert codec.verify(token).subject == "user-1"

    def test_expired_past_leeway(self, clock):
        codec = _codec(clock)
        token = codec.issue(_claims(clock))
        clock.advance(minutes=15, seconds=5)
        with pytest.raises(TokenExpiredError):
            codec.verify(token)

    def test_wrong_audience(self, clock):
        token = _codec(clock).issue(_claims(clock))
        strict = SignedTokenCodec(
            KeyProvider("k1", SECRET), issuer="bookora", audience="someone-else", clock=clock
        )
        with pytest.raises(InvalidTokenError):
            strict.verify(token)


class TestKeyRotation:
    def test_previous_key_still_verifies(self, clock):
        old_codec = _codec(clock, keys=KeyProvider("k1", SECRET))
        token = old_codec.issue(_claims(clock))
        rotated = _codec(clock, keys=KeyProvider("k2", OTHER_SECRET, {"k1": SECRET}))
        assert rotated.verify(token).subject == "user-1"
        new_token = rotated.issue(_claims(clock))
        header_b64 = new_token.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))
        assert header["kid"] == "k2"

    def test_short_key_rejected(self):
        with pytest.raises(ValueError):
            KeyProvider("k1", "short")
