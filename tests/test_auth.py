"""
Unit tests for Authentication module.

Tests:
- Password hashing (Argon2id) and strength policy
- Registration, enrollment and secret rotation
- Credential store
- Rate limiting
- Two-step login state machine
"""

import pytest

from twostep.auth.errors import (
    InvalidCredentials, InvalidMfaCode, TicketAlreadyUsed, TicketExpired,
    TooManyAttempts, UserAlreadyExists, WeakPassword,
)
from twostep.auth.login import (
    AuthSessionMachine, AuthState, RateLimiter,
    SESSION_TTL_SECONDS, TICKET_TTL_SECONDS,
)
from twostep.auth.registration import (
    Argon2Verifier, UserRegistration, validate_password_strength,
)
from twostep.auth.secret import Secret, SecretGenerator, base32_to_secret
from twostep.auth.store import CredentialRecord, InMemoryCredentialStore, KeyedLock

from .conftest import ALICE_PASSWORD, NOW


class TestPasswordHashing:
    """Unit tests for password hashing."""

    def test_verify_correct_password(self, verifier):
        """Correct password should verify."""
        stored = verifier.hash_password("MySecurePassword123!")
        assert verifier.verify_password("MySecurePassword123!", stored)

    def test_verify_wrong_password(self, verifier):
        """Wrong password should fail verification."""
        stored = verifier.hash_password("SecureP@ss123!Correct")
        assert not verifier.verify_password("SecureP@ss123!Wrong", stored)

    def test_same_password_different_hashes(self, verifier):
        """Same password should have different hashes (random salt)."""
        assert verifier.hash_password("Same@123x") != verifier.hash_password("Same@123x")

    def test_malformed_hash(self, verifier):
        """A garbage hash verifies as False instead of raising."""
        assert not verifier.verify_password("whatever", "not-an-argon2-hash")

    def test_needs_rehash(self, verifier):
        """Hashes made with weaker parameters need a rehash."""
        stored = verifier.hash_password("SecureP@ss123!")
        stronger = Argon2Verifier(time_cost=2, memory_cost=1024, parallelism=1)
        assert stronger.needs_rehash(stored)
        assert not verifier.needs_rehash(stored)


class TestPasswordStrength:
    """Tests for password strength validation."""

    def test_strong_password(self):
        result = validate_password_strength("MyStr0ng!Pass@123")
        assert result['valid']
        assert result['errors'] == []

    def test_short_password_rejected(self):
        result = validate_password_strength("Ab1!")
        assert not result['valid']

    def test_no_uppercase_rejected(self):
        assert not validate_password_strength("nouppercase123!")['valid']

    def test_no_digit_rejected(self):
        assert not validate_password_strength("NoDigitsHere!")['valid']

    def test_requirements_override(self):
        """Policy can be relaxed per deployment."""
        relaxed = {'require_special': False, 'require_uppercase': False}
        assert validate_password_strength("simplepass1", relaxed)['valid']

    def test_score_range(self):
        for password in ("a", "aaaaaaa", "Str0ng!Passw0rd#2024"):
            assert 0 <= validate_password_strength(password)['score'] <= 100


class TestCredentialStore:
    """Tests for the in-memory credential store."""

    def _record(self, user_id="alice"):
        return CredentialRecord(user_id, "hash", Secret(b"x" * 20))

    def test_get_missing(self):
        assert InMemoryCredentialStore().get("nobody") is None

    def test_put_and_get(self):
        store = InMemoryCredentialStore()
        record = self._record()
        store.put("alice", record)
        assert store.get("alice") is record
        assert "alice" in store
        assert len(store) == 1

    def test_key_mismatch(self):
        """A record cannot be stored under another user's key."""
        with pytest.raises(ValueError):
            InMemoryCredentialStore().put("bob", self._record("alice"))

    def test_records_are_immutable(self):
        record = self._record()
        with pytest.raises(AttributeError):
            record.enrolled = True

    def test_with_secret_resets_enrollment(self):
        record = self._record().mark_enrolled()
        rotated = record.with_secret(Secret(b"y" * 20))
        assert record.enrolled
        assert not rotated.enrolled
        assert rotated.mfa_secret == Secret(b"y" * 20)

    def test_compare_and_put(self):
        store = InMemoryCredentialStore()
        record = self._record()
        store.put("alice", record)
        assert store.compare_and_put("alice", record, record.mark_enrolled())
        assert store.get("alice").enrolled

    def test_compare_and_put_stale_expected(self):
        """A replacement based on an outdated record is refused."""
        store = InMemoryCredentialStore()
        old = self._record()
        rotated = old.with_secret(Secret(b"y" * 20))
        store.put("alice", rotated)
        assert not store.compare_and_put("alice", old, old.mark_enrolled())
        assert store.get("alice") is rotated


class TestKeyedLock:
    """Tests for per-key locking."""

    def test_locks_released(self):
        """Locks are dropped when no longer held."""
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0


class TestUserRegistration:
    """Tests for user registration and enrollment."""

    def test_register_user(self, registration, store):
        """Registration stores a hashed password and a fresh secret."""
        enrollment = registration.register_user("testuser", "SecureP@ss123!")
        record = store.get("testuser")
        assert record is not None
        assert record.password_hash != "SecureP@ss123!"
        assert not record.enrolled
        assert enrollment.secret_base32 == record.mfa_secret.base32
        assert enrollment.provisioning_uri.startswith("otpauth://totp/twostep:testuser?")

    def test_enrollment_repr_hides_secret(self, registration):
        enrollment = registration.register_user("testuser", "SecureP@ss123!")
        assert enrollment.secret_base32 not in repr(enrollment)

    def test_duplicate_user_rejected(self, registration):
        registration.register_user("duplicate", "SecureP@ss123!")
        with pytest.raises(UserAlreadyExists):
            registration.register_user("duplicate", "AnotherP@ss123!")

    def test_weak_password_rejected(self, registration, store):
        with pytest.raises(WeakPassword) as exc_info:
            registration.register_user("newuser", "weak")
        assert exc_info.value.errors
        assert store.get("newuser") is None

    def test_weak_password_is_value_error(self, registration):
        with pytest.raises(ValueError):
            registration.register_user("newuser", "")

    def test_empty_user_id_rejected(self, registration):
        with pytest.raises(ValueError):
            registration.register_user("  ", "SecureP@ss123!")

    def test_confirm_enrollment(self, registration, store, engine):
        enrollment = registration.register_user("alice", ALICE_PASSWORD)
        secret = base32_to_secret(enrollment.secret_base32)
        assert registration.confirm_enrollment("alice", engine.code(secret, NOW), NOW)
        assert store.get("alice").enrolled
        assert registration.is_enrolled("alice")

    def test_confirm_enrollment_wrong_code(self, registration, store):
        registration.register_user("alice", ALICE_PASSWORD)
        assert not registration.confirm_enrollment("alice", "abcdef", NOW)
        assert not store.get("alice").enrolled

    def test_confirm_enrollment_unknown_user(self, registration):
        assert not registration.confirm_enrollment("ghost", "123456", NOW)

    def test_rotate_secret(self, registration, store, engine):
        """Rotation issues a new secret and requires re-enrollment."""
        first = registration.register_user("alice", ALICE_PASSWORD)
        registration.confirm_enrollment(
            "alice", engine.code(base32_to_secret(first.secret_base32), NOW), NOW)

        second = registration.rotate_secret("alice")
        record = store.get("alice")
        assert second.secret_base32 != first.secret_base32
        assert record.mfa_secret.base32 == second.secret_base32
        assert not record.enrolled

    def test_rotate_unknown_user(self, registration):
        with pytest.raises(KeyError):
            registration.rotate_secret("ghost")

    def test_custom_issuer(self, store, verifier):
        reg = UserRegistration(store, verifier=verifier, issuer="Acme Corp")
        enrollment = reg.register_user("alice", ALICE_PASSWORD)
        assert "otpauth://totp/Acme%20Corp:alice?" in enrollment.provisioning_uri

    def test_injected_generator(self, store, verifier):
        gen = SecretGenerator(random_source=lambda n: b"\x07" * n)
        reg = UserRegistration(store, verifier=verifier, generator=gen)
        reg.register_user("alice", ALICE_PASSWORD)
        assert store.get("alice").mfa_secret.raw == b"\x07" * 20


class TestRateLimiter:
    """Tests for rate limiting."""

    def test_allows_initial_attempts(self):
        limiter = RateLimiter(max_attempts=3, window_seconds=60)
        is_locked, _ = limiter.is_locked_out("user1", NOW)
        assert not is_locked

    def test_blocks_after_max_attempts(self):
        limiter = RateLimiter(max_attempts=2, lockout_duration=60)
        limiter.record_attempt("user1", success=False, now=NOW)
        limiter.record_attempt("user1", success=False, now=NOW)
        is_locked, remaining = limiter.is_locked_out("user1", NOW + 1)
        assert is_locked
        assert remaining == 59

    def test_lockout_expires(self):
        limiter = RateLimiter(max_attempts=1, lockout_duration=60, window_seconds=60)
        limiter.record_attempt("user1", success=False, now=NOW)
        assert not limiter.is_locked_out("user1", NOW + 61)[0]

    def test_success_resets(self):
        limiter = RateLimiter(max_attempts=3)
        limiter.record_attempt("user1", success=False, now=NOW)
        limiter.record_attempt("user1", success=True, now=NOW)
        assert limiter.get_remaining_attempts("user1", NOW) == 3

    def test_window_resets_count(self):
        limiter = RateLimiter(max_attempts=2, window_seconds=60)
        limiter.record_attempt("user1", success=False, now=NOW)
        limiter.record_attempt("user1", success=False, now=NOW + 120)
        assert not limiter.is_locked_out("user1", NOW + 121)[0]
        assert limiter.get_remaining_attempts("user1", NOW + 121) == 1

    def test_different_users_independent(self):
        limiter = RateLimiter(max_attempts=1)
        limiter.record_attempt("user1", success=False, now=NOW)
        assert not limiter.is_locked_out("user2", NOW)[0]

    def test_reset(self):
        limiter = RateLimiter(max_attempts=1)
        limiter.record_attempt("user1", success=False, now=NOW)
        limiter.reset("user1")
        assert not limiter.is_locked_out("user1", NOW)[0]

    def test_sprayed_identifiers_are_pruned(self):
        """Failures for many one-off identifiers do not accumulate."""
        limiter = RateLimiter(max_attempts=3, window_seconds=60)
        for i in range(1000):
            limiter.record_attempt(f"spray{i}", success=False, now=NOW)
        assert len(limiter) == 1000

        limiter.record_attempt("late", success=False, now=NOW + 10**6)
        assert len(limiter) == 1

    def test_prune_keeps_active_lockouts(self):
        limiter = RateLimiter(max_attempts=1, lockout_duration=600, window_seconds=60)
        limiter.record_attempt("locked", success=False, now=NOW)
        assert limiter.prune(NOW + 120) == 0
        assert limiter.is_locked_out("locked", NOW + 120)[0]
        assert limiter.prune(NOW + 601) == 1
        assert len(limiter) == 0


class TestPasswordStep:
    """Tests for start_login."""

    def test_ticket_issued(self, machine, alice, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        assert ticket.user_id == "alice"
        assert ticket.issued_at == clock.now
        assert ticket.expires_at == clock.now + TICKET_TTL_SECONDS
        assert machine.state_of(ticket) == AuthState.PASSWORD_VERIFIED

    def test_ticket_ids_unique(self, machine, alice):
        first = machine.start_login("alice", ALICE_PASSWORD)
        second = machine.start_login("alice", ALICE_PASSWORD)
        assert first.ticket_id != second.ticket_id

    def test_wrong_password(self, machine, alice):
        with pytest.raises(InvalidCredentials):
            machine.start_login("alice", "wrong-password")

    def test_unknown_user(self, machine):
        with pytest.raises(InvalidCredentials):
            machine.start_login("bob", "anything")

    def test_empty_password(self, machine, alice):
        with pytest.raises(InvalidCredentials):
            machine.start_login("alice", "")

    def test_ticket_ttl_configurable(self, store, verifier, alice):
        machine = AuthSessionMachine(store, verifier, ticket_ttl=60)
        ticket = machine.start_login("alice", ALICE_PASSWORD, now=NOW)
        assert ticket.expires_at == NOW + 60

    def test_invalid_ttl(self, store, verifier):
        with pytest.raises(ValueError):
            AuthSessionMachine(store, verifier, ticket_ttl=0)


class TestMfaStep:
    """Tests for complete_mfa."""

    def test_session_created(self, machine, alice, engine, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        session = machine.complete_mfa(ticket, engine.code(alice, clock.now))
        assert session.user_id == "alice"
        assert session.authenticated_at == clock.now
        assert session.expires_at == clock.now + SESSION_TTL_SECONDS
        assert machine.state_of(session) == AuthState.AUTHENTICATED
        assert machine.state_of(ticket) == AuthState.ANONYMOUS
        assert machine.get_session(session.session_id) == session

    def test_wrong_code_keeps_ticket(self, machine, alice, engine, clock):
        """A wrong code can be retried with the same ticket."""
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        good = engine.code(alice, clock.now)
        wrong = "000000" if good != "000000" else "111111"
        with pytest.raises(InvalidMfaCode):
            machine.complete_mfa(ticket, wrong)
        assert machine.state_of(ticket) == AuthState.PASSWORD_VERIFIED
        assert machine.complete_mfa(ticket, good).user_id == "alice"

    def test_malformed_code(self, machine, alice):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        with pytest.raises(InvalidMfaCode):
            machine.complete_mfa(ticket, "12ab")

    def test_code_with_drift(self, machine, alice, engine, clock):
        """A code from the previous step is still accepted."""
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        previous = engine.code(alice, clock.now - engine.time_step)
        assert machine.complete_mfa(ticket, previous)

    def test_ticket_single_use(self, machine, alice, engine, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        code = engine.code(alice, clock.now)
        machine.complete_mfa(ticket, code)
        with pytest.raises(TicketAlreadyUsed):
            machine.complete_mfa(ticket, code)

    def test_expired_ticket(self, machine, alice, engine, clock):
        """An expired ticket fails even with a correct code."""
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        clock.advance(TICKET_TTL_SECONDS + 1)
        with pytest.raises(TicketExpired):
            machine.complete_mfa(ticket, engine.code(alice, clock.now))

    def test_ticket_valid_at_exact_expiry(self, machine, alice, engine, clock):
        """Expiry is strict: now == expires_at is still valid."""
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        clock.now = ticket.expires_at
        assert machine.complete_mfa(ticket, engine.code(alice, clock.now))

    def test_expired_beats_used(self, machine, alice, engine, clock):
        """Past expiry a consumed ticket reports TicketExpired."""
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        machine.complete_mfa(ticket, engine.code(alice, clock.now))
        clock.advance(TICKET_TTL_SECONDS + 1)
        with pytest.raises(TicketExpired):
            machine.complete_mfa(ticket, engine.code(alice, clock.now))

    def test_forged_ticket(self, machine, alice, engine, clock):
        """A ticket the machine never issued is rejected."""
        real = machine.start_login("alice", ALICE_PASSWORD)
        forged = type(real)("forged-id", "alice", real.issued_at, real.expires_at)
        with pytest.raises(TicketExpired):
            machine.complete_mfa(forged, engine.code(alice, clock.now))

    def test_tampered_ticket(self, machine, alice, store, verifier, engine, clock):
        """Changing the user on a real ticket id does not work."""
        UserRegistration(store, verifier=verifier).register_user("mallory", "Mall0ry!Pass")
        real = machine.start_login("mallory", "Mall0ry!Pass")
        tampered = type(real)(real.ticket_id, "alice", real.issued_at, real.expires_at)
        with pytest.raises(TicketExpired):
            machine.complete_mfa(tampered, engine.code(alice, clock.now))

    def test_altered_copy_leaves_real_ticket(self, machine, alice, engine, clock):
        """An altered copy is rejected without touching the issued ticket."""
        real = machine.start_login("alice", ALICE_PASSWORD)
        altered = type(real)(real.ticket_id, "alice", real.issued_at, real.expires_at + 60)

        with pytest.raises(TicketExpired):
            machine.complete_mfa(altered, engine.code(alice, clock.now))
        assert machine.state_of(real) == AuthState.PASSWORD_VERIFIED

        machine.complete_mfa(real, engine.code(alice, clock.now))
        with pytest.raises(TicketExpired):
            machine.complete_mfa(altered, engine.code(alice, clock.now))
        with pytest.raises(TicketAlreadyUsed):
            machine.complete_mfa(real, engine.code(alice, clock.now))

    def test_first_mfa_marks_enrolled(self, machine, alice, engine, store, clock):
        assert not store.get("alice").enrolled
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        machine.complete_mfa(ticket, engine.code(alice, clock.now))
        assert store.get("alice").enrolled

    def test_rotated_secret_invalidates_old_codes(self, machine, alice, registration,
                                                  engine, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        registration.rotate_secret("alice")
        with pytest.raises(InvalidMfaCode):
            machine.complete_mfa(ticket, engine.code(alice, clock.now))


class TestSessionLifecycle:
    """Tests for logout, cancel and expiry."""

    def _login(self, machine, engine, secret, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        return machine.complete_mfa(ticket, engine.code(secret, clock.now))

    def test_logout(self, machine, alice, engine, clock):
        session = self._login(machine, engine, alice, clock)
        machine.logout(session)
        assert machine.get_session(session.session_id) is None
        assert machine.state_of(session) == AuthState.ANONYMOUS

    def test_logout_idempotent(self, machine, alice, engine, clock):
        session = self._login(machine, engine, alice, clock)
        machine.logout(session)
        machine.logout(session)
        assert machine.active_sessions == 0

    def test_session_expiry(self, machine, alice, engine, clock):
        session = self._login(machine, engine, alice, clock)
        clock.advance(SESSION_TTL_SECONDS + 1)
        assert machine.get_session(session.session_id) is None
        assert machine.state_of(session) == AuthState.ANONYMOUS

    def test_cancel_login(self, machine, alice, engine, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        machine.cancel_login(ticket)
        machine.cancel_login(ticket)
        assert machine.state_of(ticket) == AuthState.ANONYMOUS
        with pytest.raises(TicketExpired):
            machine.complete_mfa(ticket, engine.code(alice, clock.now))

    def test_state_of_none(self, machine):
        assert machine.state_of(None) == AuthState.ANONYMOUS

    def test_expired_ticket_state(self, machine, alice, clock):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        clock.advance(TICKET_TTL_SECONDS + 1)
        assert machine.state_of(ticket) == AuthState.ANONYMOUS

    def test_reap_expired(self, machine, alice, engine, clock):
        self._login(machine, engine, alice, clock)
        machine.start_login("alice", ALICE_PASSWORD)
        assert machine.reap_expired() == 0
        clock.advance(SESSION_TTL_SECONDS + 1)
        # consumed ticket, pending ticket and session
        assert machine.reap_expired() == 3
        assert machine.active_sessions == 0
        assert machine.pending_tickets == 0

    def test_reap_expired_prunes_rate_limiter(self, machine, clock):
        with pytest.raises(InvalidCredentials):
            machine.start_login("ghost", "anything")
        assert len(machine.rate_limiter) == 1

        clock.advance(600)
        machine.reap_expired()
        assert len(machine.rate_limiter) == 0


class TestLockout:
    """Tests for brute-force throttling in the machine."""

    def test_password_lockout(self, machine, alice):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                machine.start_login("alice", "wrong-password")
        with pytest.raises(TooManyAttempts) as exc_info:
            machine.start_login("alice", ALICE_PASSWORD)
        assert exc_info.value.retry_after > 0

    def test_lockout_expires(self, machine, alice, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                machine.start_login("alice", "wrong-password")
        clock.advance(301)
        assert machine.start_login("alice", ALICE_PASSWORD)

    def test_mfa_failures_count(self, machine, alice):
        ticket = machine.start_login("alice", ALICE_PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidMfaCode):
                machine.complete_mfa(ticket, "abcdef")
        with pytest.raises(TooManyAttempts):
            machine.complete_mfa(ticket, "abcdef")

    def test_unknown_user_throttled_too(self, machine):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                machine.start_login("bob", "anything")
        with pytest.raises(TooManyAttempts):
            machine.start_login("bob", "anything")
