import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookora.service.runtime import reset_runtime_for_tests  # noqa: E402
from bookora.storage.models import Booking  # noqa: E402

START = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value


class RecordingSink:
    """Notification sink that keeps every published event."""

    def __init__(self) -> None:
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)

    def last(self, template: str):
        for event in reversed(self.events):
            if event.template == template:
                return event
        raise AssertionError(f"no {template} mail was published")

    def token_from(self, template: str) -> str:
        variables = self.last(template).variables
        url = next(v for k, v in variables.items() if k.endswith("_url"))
        return url.split("#token=", 1)[1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mail():
    return RecordingSink()


@pytest.fixture(autouse=True)
def runtime(clock, mail):
    rt = reset_runtime_for_tests(clock=clock, notifications=mail)
    yield rt
    rt.close()


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def make_user(runtime):
    def _make(
        email="alice@example.com",
        password="correct horse battery",
        *,
        verified=True,
        roles=("USER",),
        is_guest=False,
    ):
        user = runtime.store.create_user(
            email, roles=roles, is_email_verified=verified, is_guest=is_guest, first_name="Alice"
        )
        if password is not None:
            runtime.store.save_password(user.id, runtime.hasher.hash(password))
        return user

    return _make


@pytest.fixture
def make_booking(runtime, clock):
    def _make(customer_id, *, starts_in=timedelta(days=2), duration=timedelta(hours=1)):
        start = clock.now() + starts_in
        booking = Booking.new(customer_id, start, start + duration)
        return runtime.store.save_booking(booking)

    return _make
