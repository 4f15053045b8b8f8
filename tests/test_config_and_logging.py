import pytest
from pydantic import ValidationError

from bookora.config import Settings
from bookora.logging import _redact_credentials, sanitize_error_message, token_fingerprint
from bookora.service.errors import WeakPasswordError
from bookora.service.passwords import Argon2PasswordHasher, validate_password_strength

SECRET = "c" * 40


class TestSettings:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_previous_keys_parsed(self):
        settings = Settings(jwt_secret=SECRET, jwt_previous_keys=f"old:{'o' * 40}, older:{'p' * 40}")
        assert settings.previous_signing_keys() == {"old": "o" * 40, "older": "p" * 40}

    def test_previous_keys_must_have_kid(self):
        settings = Settings(jwt_secret=SECRET, jwt_previous_keys="no-separator")
        with pytest.raises(ValueError):
            settings.previous_signing_keys()

    def test_samesite_normalized(self):
        assert Settings(jwt_secret=SECRET, refresh_cookie_samesite="Lax").refresh_cookie_samesite == "lax"
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, refresh_cookie_samesite="sometimes")

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "7")
        monkeypatch.setenv("JWT_SECRET", SECRET)
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 7
        assert settings.jwt_secret == SECRET


class TestLogging:
    def test_credentials_are_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {"password": "hunter22", "refresh_token": "abcdefghij", "email": "alice@example.com"},
        )
        assert event["password"] == f"fp:{token_fingerprint('hunter22')}"
        assert event["refresh_token"] == f"fp:{token_fingerprint('abcdefghij')}"
        assert event["email"] == "al***@example.com"

    def test_fingerprints_are_kept(self):
        fp = token_fingerprint("some-token")
        event = _redact_credentials(None, "info", {"token_fingerprint": fp, "token_purpose": "PASSWORD_RESET"})
        assert event == {"token_fingerprint": fp, "token_purpose": "PASSWORD_RESET"}
        assert len(fp) == 12

    def test_sanitize_error_message(self):
        cleaned = sanitize_error_message("password=letmein at /var/lib/app/db.sqlite")
        assert "letmein" not in cleaned
        assert "/var/lib" not in cleaned


class TestPasswords:
    def test_hash_and_verify(self):
        hasher = Argon2PasswordHasher()
        hashed = hasher.hash("correct horse battery")
        assert hashed.startswith("$argon2id$")
        assert hasher.verify(hashed, "correct horse battery")
        assert not hasher.verify(hashed, "wrong horse battery")

    def test_garbage_hash_does_not_verify(self):
        assert Argon2PasswordHasher().verify("not-a-hash", "anything") is False

    @pytest.mark.parametrize("value", ["", "short", "x" * 129])
    def test_weak_passwords(self, value):
        with pytest.raises(WeakPasswordError):
            validate_password_strength(value)
