"""
User Login Module

Two-step login: password, then TOTP code, then an authenticated session.

    ANONYMOUS --start_login--> PASSWORD_VERIFIED(ticket)
              --complete_mfa--> AUTHENTICATED(session)

Any state returns to ANONYMOUS on logout, cancel or expiry.

Security considerations:
- Unknown user and wrong password fail identically, same message and
  the same password-hash work (a decoy hash is verified for unknown users)
- A pending ticket is consumed exactly once, under a per-ticket lock
- Rate limiting against brute-force on both steps
- Expiry is checked lazily on access; reap_expired() is optional
- Never log passwords, codes or secrets
"""

import enum
import logging
import secrets
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from .errors import (
    InvalidCredentials,
    InvalidMfaCode,
    TicketAlreadyUsed,
    TicketExpired,
    TooManyAttempts,
)
from .registration import CredentialVerifier
from .store import CredentialStore, KeyedLock
from .totp import TOTPEngine
from ..integration.event_logger import get_user_hash_short


logger = logging.getLogger(__name__)

# Ticket/session configuration
TICKET_TTL_SECONDS = 300        # 5 minutes to complete the MFA step
SESSION_TTL_SECONDS = 3600      # 1 hour default
SESSION_ID_BYTES = 32           # 256-bit identifiers

# Rate limiting configuration
MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION_SECONDS = 300  # 5 minutes
ATTEMPT_WINDOW_SECONDS = 300    # 5 minute window for counting attempts

DECOY_PASSWORD = "decoy-password-for-unknown-users"


class AuthState(enum.Enum):
    ANONYMOUS = "anonymous"
    PASSWORD_VERIFIED = "password_verified"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class PendingAuthTicket:
    """Proof that the password step succeeded; waits for the MFA code."""
    ticket_id: str
    user_id: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class AuthenticatedSession:
    """Represents an authenticated session."""
    session_id: str
    user_id: str
    authenticated_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class LoginAttempt:
    """Track login attempts for rate limiting."""
    attempts: int = 0
    first_attempt_time: float = 0.0
    lockout_until: float = 0.0


class RateLimiter:
    """
    Rate limiter to prevent brute-force login attacks.

    Tracks failed attempts per identifier (user id or client IP) and
    enforces a lockout period after too many failures.
    """

    def __init__(self, max_attempts: int = MAX_LOGIN_ATTEMPTS,
                 lockout_duration: int = LOCKOUT_DURATION_SECONDS,
                 window_seconds: int = ATTEMPT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize rate limiter.

        Args:
            max_attempts: Maximum failed attempts before lockout
            lockout_duration: Lockout duration in seconds
            window_seconds: Time window for counting attempts
            clock: Time source
        """
        self._attempts: Dict[str, LoginAttempt] = defaultdict(LoginAttempt)
        self._max_attempts = max_attempts
        self._lockout_duration = lockout_duration
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_prune: Optional[float] = None

    def _is_stale(self, attempt: LoginAttempt, now: float) -> bool:
        return (attempt.lockout_until <= now
                and now - attempt.first_attempt_time > self._window_seconds)

    def _prune_locked(self, now: float) -> int:
        stale = [key for key, attempt in self._attempts.items()
                 if self._is_stale(attempt, now)]
        for key in stale:
            del self._attempts[key]
        self._last_prune = now
        return len(stale)

    def prune(self, now: Optional[float] = None) -> int:
        """
        Drop identifiers whose window and lockout have both passed.

        Returns:
            Number of identifiers removed
        """
        now = self._clock() if now is None else now
        with self._lock:
            return self._prune_locked(now)

    def is_locked_out(self, identifier: str,
                      now: Optional[float] = None) -> Tuple[bool, int]:
        """
        Check if an identifier is locked out.

        Returns:
            Tuple of (is_locked, seconds_remaining)
        """
        now = self._clock() if now is None else now
        with self._lock:
            attempt = self._attempts.get(identifier)
            if not attempt:
                return False, 0

            if attempt.lockout_until > now:
                return True, max(1, int(attempt.lockout_until - now))

            # Reset if window has passed
            if now - attempt.first_attempt_time > self._window_seconds:
                del self._attempts[identifier]

            return False, 0

    def record_attempt(self, identifier: str, success: bool,
                       now: Optional[float] = None) -> None:
        """
        Record an attempt. Success clears the identifier's history.
        """
        now = self._clock() if now is None else now
        with self._lock:
            if success:
                self._attempts.pop(identifier, None)
                return

            # Failures under made-up identifiers must not pile up forever
            if self._last_prune is None or now - self._last_prune >= self._window_seconds:
                self._prune_locked(now)

            attempt = self._attempts[identifier]

            if attempt.attempts and now - attempt.first_attempt_time > self._window_seconds:
                attempt = LoginAttempt()
                self._attempts[identifier] = attempt

            if attempt.attempts == 0:
                attempt.first_attempt_time = now

            attempt.attempts += 1

            if attempt.attempts >= self._max_attempts:
                attempt.lockout_until = now + self._lockout_duration

    def get_remaining_attempts(self, identifier: str,
                               now: Optional[float] = None) -> int:
        """Get number of remaining attempts before lockout."""
        now = self._clock() if now is None else now
        with self._lock:
            attempt = self._attempts.get(identifier)
            if not attempt:
                return self._max_attempts
            if now - attempt.first_attempt_time > self._window_seconds:
                return self._max_attempts
            return max(0, self._max_attempts - attempt.attempts)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)


def generate_session_token() -> str:
    """Generate a secure random identifier for tickets and sessions."""
    return secrets.token_urlsafe(SESSION_ID_BYTES)


@dataclass
class _TicketEntry:
    ticket: PendingAuthTicket
    consumed: bool = False


class AuthSessionMachine:
    """
    Orchestrates the password step, the MFA step and session lifetime.

    Tickets and sessions are immutable values handed back to the
    caller; the machine keeps only their lifecycle registry. Every
    failure is raised as an AuthError subclass.

    Example:
        >>> machine = AuthSessionMachine(store, Argon2Verifier())
        >>> ticket = machine.start_login("alice", "SecurePass123!")
        >>> session = machine.complete_mfa(ticket, "492039")
        >>> machine.logout(session)
    """

    def __init__(self, store: CredentialStore,
                 verifier: CredentialVerifier,
                 engine: Optional[TOTPEngine] = None,
                 ticket_ttl: float = TICKET_TTL_SECONDS,
                 session_ttl: float = SESSION_TTL_SECONDS,
                 rate_limiter: Optional[RateLimiter] = None,
                 event_logger=None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            store: Credential store to read records from
            verifier: Password verification capability
            engine: TOTP engine holding the verification window policy
            ticket_ttl: Seconds a pending ticket stays valid
            session_ttl: Seconds a session stays valid
            rate_limiter: Failed-attempt throttle (a default one if None)
            event_logger: Optional EventLogger for the audit trail
            clock: Time source used when `now` is not passed
        """
        if ticket_ttl <= 0 or session_ttl <= 0:
            raise ValueError("TTLs must be positive")

        self._store = store
        self._verifier = verifier
        self._engine = engine or TOTPEngine()
        self._ticket_ttl = ticket_ttl
        self._session_ttl = session_ttl
        self._clock = clock
        if rate_limiter is None:
            rate_limiter = RateLimiter(clock=clock)
        self._rate_limiter = rate_limiter
        self._event_logger = event_logger

        self._decoy_hash = verifier.hash_password(DECOY_PASSWORD)

        self._tickets: Dict[str, _TicketEntry] = {}
        self._sessions: Dict[str, AuthenticatedSession] = {}
        self._registry_lock = threading.Lock()
        self._ticket_locks = KeyedLock()

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def _check_rate_limit(self, user_id: str, now: float) -> None:
        locked, remaining = self._rate_limiter.is_locked_out(user_id, now)
        if locked:
            logger.warning("Login locked for user %s (%ds)",
                           get_user_hash_short(user_id), remaining)
            if self._event_logger is not None:
                self._event_logger.log_lockout(user_id, remaining)
            raise TooManyAttempts(retry_after=remaining)

    # ========================================================================
    # Password step
    # ========================================================================

    def start_login(self, user_id: str, password: str,
                    now: Optional[float] = None) -> PendingAuthTicket:
        """
        Verify the password and issue a pending MFA ticket.

        Args:
            user_id: User identifier
            password: Plaintext password
            now: Current time (clock if None)

        Returns:
            PendingAuthTicket valid for ticket_ttl seconds

        Raises:
            InvalidCredentials: Unknown user or wrong password
            TooManyAttempts: Identifier is locked out
        """
        now = self._now(now)
        self._check_rate_limit(user_id, now)

        record = self._store.get(user_id)
        if record is None:
            # Same work as a real check; the result is discarded
            self._verifier.verify_password(password or "", self._decoy_hash)
            password_valid = False
        else:
            password_valid = self._verifier.verify_password(
                password or "", record.password_hash) and bool(password)

        if self._event_logger is not None:
            self._event_logger.log_login(user_id, password_valid)

        if not password_valid:
            self._rate_limiter.record_attempt(user_id, False, now)
            logger.info("Password step failed for user %s", get_user_hash_short(user_id))
            raise InvalidCredentials()

        ticket = PendingAuthTicket(
            ticket_id=generate_session_token(),
            user_id=user_id,
            issued_at=now,
            expires_at=now + self._ticket_ttl,
        )
        with self._registry_lock:
            self._tickets[ticket.ticket_id] = _TicketEntry(ticket)

        logger.info("Password step passed for user %s", get_user_hash_short(user_id))
        return ticket

    # ========================================================================
    # MFA step
    # ========================================================================

    def complete_mfa(self, ticket: PendingAuthTicket, code: str,
                     now: Optional[float] = None) -> AuthenticatedSession:
        """
        Verify the TOTP code and promote the ticket to a session.

        A wrong code leaves the ticket usable until it expires.

        Raises:
            TicketExpired: Ticket past expires_at, cancelled or unknown
            TicketAlreadyUsed: Ticket was already promoted
            InvalidMfaCode: Code wrong or malformed
            TooManyAttempts: User is locked out
        """
        now = self._now(now)

        with self._ticket_locks.hold(ticket.ticket_id):
            with self._registry_lock:
                entry = self._tickets.get(ticket.ticket_id)

            # A copy that differs from what was issued leaves the real entry alone
            if entry is None or entry.ticket != ticket:
                raise TicketExpired()

            if entry.ticket.is_expired(now):
                self._discard_ticket(ticket.ticket_id)
                raise TicketExpired()

            if entry.consumed:
                raise TicketAlreadyUsed()

            user_id = entry.ticket.user_id
            self._check_rate_limit(user_id, now)

            record = self._store.get(user_id)
            code_valid = record is not None and self._engine.verify(
                record.mfa_secret, code, now)

            if self._event_logger is not None:
                self._event_logger.log_totp(user_id, code_valid)

            if not code_valid:
                self._rate_limiter.record_attempt(user_id, False, now)
                logger.info("MFA step failed for user %s", get_user_hash_short(user_id))
                raise InvalidMfaCode()

            entry.consumed = True
            session = AuthenticatedSession(
                session_id=generate_session_token(),
                user_id=user_id,
                authenticated_at=now,
                expires_at=now + self._session_ttl,
            )
            with self._registry_lock:
                self._sessions[session.session_id] = session

        self._rate_limiter.record_attempt(user_id, True, now)

        if not record.enrolled:
            # First good code proves the authenticator is set up. A no-op
            # if the record was rotated or changed since it was read.
            self._store.compare_and_put(user_id, record, record.mark_enrolled())

        logger.info("User %s authenticated", get_user_hash_short(user_id))
        return session

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def _discard_ticket(self, ticket_id: str) -> None:
        with self._registry_lock:
            self._tickets.pop(ticket_id, None)

    def cancel_login(self, ticket: PendingAuthTicket) -> None:
        """Destroy a pending ticket. Idempotent."""
        with self._ticket_locks.hold(ticket.ticket_id):
            with self._registry_lock:
                entry = self._tickets.get(ticket.ticket_id)
                if entry is not None and not entry.consumed:
                    del self._tickets[ticket.ticket_id]

    def logout(self, session: AuthenticatedSession) -> None:
        """Destroy a session immediately. Idempotent."""
        with self._registry_lock:
            removed = self._sessions.pop(session.session_id, None)

        if removed is not None:
            logger.info("User %s logged out", get_user_hash_short(removed.user_id))
            if self._event_logger is not None:
                self._event_logger.log_logout(removed.user_id)

    def get_session(self, session_id: str,
                    now: Optional[float] = None) -> Optional[AuthenticatedSession]:
        """
        Look up a live session.

        Returns:
            The session, or None if unknown, logged out or expired
        """
        now = self._now(now)
        with self._registry_lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired(now):
                del self._sessions[session_id]
                return None
            return session

    def state_of(self, context: Union[None, PendingAuthTicket, AuthenticatedSession],
                 now: Optional[float] = None) -> AuthState:
        """Where `context` currently stands in the login flow."""
        now = self._now(now)

        if isinstance(context, AuthenticatedSession):
            if self.get_session(context.session_id, now) == context:
                return AuthState.AUTHENTICATED
            return AuthState.ANONYMOUS

        if isinstance(context, PendingAuthTicket):
            with self._registry_lock:
                entry = self._tickets.get(context.ticket_id)
                if (entry is not None and entry.ticket == context
                        and not entry.consumed and not context.is_expired(now)):
                    return AuthState.PASSWORD_VERIFIED
            return AuthState.ANONYMOUS

        return AuthState.ANONYMOUS

    def reap_expired(self, now: Optional[float] = None) -> int:
        """
        Remove expired tickets (including consumed ones) and sessions,
        and prune stale rate-limiter entries.

        Returns:
            Number of entries removed
        """
        now = self._now(now)
        with self._registry_lock:
            expired_tickets = [
                tid for tid, entry in self._tickets.items()
                if entry.ticket.is_expired(now)
            ]
            for tid in expired_tickets:
                del self._tickets[tid]

            expired_sessions = [
                sid for sid, session in self._sessions.items()
                if session.is_expired(now)
            ]
            for sid in expired_sessions:
                del self._sessions[sid]

        removed = len(expired_tickets) + len(expired_sessions)
        if removed:
            logger.debug("Reaped %d expired tickets/sessions", removed)

        pruned = self._rate_limiter.prune(now)
        if pruned:
            logger.debug("Pruned %d stale rate-limit entries", pruned)
        return removed

    @property
    def engine(self) -> TOTPEngine:
        return self._engine

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def active_sessions(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    @property
    def pending_tickets(self) -> int:
        with self._registry_lock:
            return sum(1 for entry in self._tickets.values() if not entry.consumed)
