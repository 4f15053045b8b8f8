import threading
import uuid
from datetime import timedelta

import pytest

from bookora.service.errors import (
    InvalidTokenError,
    MalformedTokenError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
    WrongTokenPurposeError,
)
from bookora.service.opaque_tokens import hash_token
from bookora.storage.models import TokenPurpose

RESET = TokenPurpose.PASSWORD_RESET
VERIFY = TokenPurpose.EMAIL_VERIFICATION


@pytest.fixture
def tokens(runtime):
    return runtime.opaque_tokens


class TestCreate:
    def test_value_is_uuid_and_only_digest_is_stored(self, tokens, store):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        assert str(uuid.UUID(raw)) == raw
        assert raw not in store.opaque_tokens
        record = store.get_opaque_token(hash_token(raw))
        assert record.owner_id == "owner-1"
        assert record.purpose is RESET
        assert record.consumed_at is None

    def test_values_do_not_repeat(self, tokens):
        values = {tokens.create(RESET, "owner-1", timedelta(hours=1)) for _ in range(50)}
        assert len(values) == 50

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-1)])
    def test_non_positive_ttl_rejected(self, tokens, ttl):
        with pytest.raises(ValueError):
            tokens.create(RESET, "owner-1", ttl)


class TestValidateAndConsume:
    """A token is accepted at most once."""

    def test_first_consume_returns_owner(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        assert tokens.validate_and_consume(RESET, raw) == "owner-1"

    def test_second_consume_is_already_used(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        tokens.validate_and_consume(RESET, raw)
        with pytest.raises(TokenAlreadyConsumedError) as excinfo:
            tokens.validate_and_consume(RESET, raw)
        assert excinfo.value.status_code == 409

    def test_uppercase_value_is_the_same_token(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        assert tokens.validate_and_consume(RESET, raw.upper()) == "owner-1"
        with pytest.raises(TokenAlreadyConsumedError):
            tokens.validate_and_consume(RESET, raw)

    def test_expired_token(self, tokens, clock):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        clock.advance(hours=1)
        with pytest.raises(TokenExpiredError):
            tokens.validate_and_consume(RESET, raw)

    def test_expired_wins_over_consumed(self, tokens, clock):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        tokens.validate_and_consume(RESET, raw)
        clock.advance(hours=2)
        with pytest.raises(TokenExpiredError):
            tokens.validate_and_consume(RESET, raw)

    def test_wrong_purpose_does_not_consume(self, tokens):
        raw = tokens.create(VERIFY, "owner-1", timedelta(days=1))
        with pytest.raises(WrongTokenPurposeError):
            tokens.validate_and_consume(RESET, raw)
        assert tokens.validate_and_consume(VERIFY, raw) == "owner-1"

    def test_unknown_token(self, tokens):
        with pytest.raises(TokenNotFoundError):
            tokens.validate_and_consume(RESET, str(uuid.uuid4()))

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            "not-a-token",
            "12345678123456781234567812345678",
            "{12345678-1234-5678-1234-567812345678}",
            "g2345678-1234-5678-1234-567812345678",
            "x" * 300,
        ],
    )
    def test_malformed_values(self, tokens, value):
        with pytest.raises(MalformedTokenError) as excinfo:
            tokens.validate_and_consume(RESET, value)
        assert excinfo.value.status_code == 400
        assert isinstance(excinfo.value, InvalidTokenError)

    def test_concurrent_consumers_see_one_success(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                tokens.validate_and_consume(RESET, raw)
                result = "ok"
            except TokenAlreadyConsumedError:
                result = "used"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == workers - 1


class TestPeek:
    def test_peek_does_not_consume(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        assert tokens.peek(RESET, raw).owner_id == "owner-1"
        assert tokens.validate_and_consume(RESET, raw) == "owner-1"

    def test_peek_consumed_token(self, tokens):
        raw = tokens.create(RESET, "owner-1", timedelta(hours=1))
        tokens.validate_and_consume(RESET, raw)
        with pytest.raises(TokenAlreadyConsumedError):
            tokens.peek(RESET, raw)
        assert tokens.peek(RESET, raw, allow_consumed=True).is_consumed

    def test_peek_applies_purpose_and_expiry(self, tokens, clock):
        raw = tokens.create(VERIFY, "owner-1", timedelta(hours=1))
        with pytest.raises(WrongTokenPurposeError):
            tokens.peek(RESET, raw)
        clock.advance(hours=1)
        with pytest.raises(TokenExpiredError):
            tokens.peek(VERIFY, raw, allow_consumed=True)


class TestHousekeeping:
    def test_discard_removes_outstanding_tokens_only(self, tokens):
        used = tokens.create(RESET, "owner-1", timedelta(hours=1))
        tokens.validate_and_consume(RESET, used)
        pending = tokens.create(RESET, "owner-1", timedelta(hours=1))
        other_owner = tokens.create(RESET, "owner-2", timedelta(hours=1))
        other_purpose = tokens.create(VERIFY, "owner-1", timedelta(hours=1))

        assert tokens.discard_for_owner(RESET, "owner-1") == 1
        with pytest.raises(TokenNotFoundError):
            tokens.validate_and_consume(RESET, pending)
        # consumed rows survive so replays still report "already used"
        with pytest.raises(TokenAlreadyConsumedError):
            tokens.validate_and_consume(RESET, used)
        assert tokens.validate_and_consume(RESET, other_owner) == "owner-2"
        assert tokens.validate_and_consume(VERIFY, other_purpose) == "owner-1"

    def test_find_active_for_owner(self, tokens, clock):
        tokens.create(RESET, "owner-1", timedelta(minutes=10))
        live = tokens.create(RESET, "owner-1", timedelta(hours=2))
        used = tokens.create(RESET, "owner-1", timedelta(hours=2))
        tokens.validate_and_consume(RESET, used)
        clock.advance(minutes=30)
        active = tokens.find_active_for_owner(RESET, "owner-1")
        assert [t.token_hash for t in active] == [hash_token(live)]

    def test_purge_respects_retention(self, tokens, store, clock):
        expired = tokens.create(RESET, "owner-1", timedelta(hours=1))
        consumed = tokens.create(VERIFY, "owner-1", timedelta(days=60))
        tokens.validate_and_consume(VERIFY, consumed)
        fresh = tokens.create(RESET, "owner-2", timedelta(days=60))

        clock.advance(days=10)
        assert tokens.purge_expired(timedelta(days=30)) == 0

        clock.advance(days=21)
        assert tokens.purge_expired(timedelta(days=30)) == 2
        assert store.get_opaque_token(hash_token(expired)) is None
        assert store.get_opaque_token(hash_token(consumed)) is None
        assert store.get_opaque_token(hash_token(fresh)) is not None
