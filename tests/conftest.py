"""
Shared fixtures.
"""

import pytest

from twostep.auth.login import AuthSessionMachine, RateLimiter
from twostep.auth.registration import Argon2Verifier, UserRegistration
from twostep.auth.secret import Secret
from twostep.auth.store import InMemoryCredentialStore
from twostep.auth.totp import TOTPEngine
from twostep.integration.event_logger import EventLogger


# Fixed point in time used by most tests
NOW = 1_700_000_000.0

ALICE_PASSWORD = "AliceSecure@2024!"
RFC_SECRET = Secret(b"12345678901234567890")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def verifier():
    """Argon2id with cheap parameters so the suite stays fast."""
    return Argon2Verifier(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def engine():
    return TOTPEngine()


@pytest.fixture
def audit(clock):
    return EventLogger(clock=clock)


@pytest.fixture
def registration(store, verifier, engine, audit):
    return UserRegistration(store, verifier=verifier, engine=engine, event_logger=audit)


@pytest.fixture
def machine(store, verifier, engine, audit, clock):
    return AuthSessionMachine(
        store,
        verifier,
        engine=engine,
        rate_limiter=RateLimiter(clock=clock),
        event_logger=audit,
        clock=clock,
    )


@pytest.fixture
def alice(registration, store):
    """Registered user 'alice'; returns her stored MFA secret."""
    registration.register_user("alice", ALICE_PASSWORD)
    return store.get("alice").mfa_secret
