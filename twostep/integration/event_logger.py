"""
Event Logger Module

Security audit trail for the two-step login flow.

Features:
- Registration, enrollment, login, MFA and logout events
- Privacy-preserving user hashes (SHA-256), never plaintext user ids
- Hash-chained entries for a tamper-evident log
- Subscriber callbacks for forwarding events elsewhere
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
GENESIS_HASH = "0" * 64
SYSTEM_USER = "system"


# ============================================================================
# Privacy Functions
# ============================================================================

def get_user_hash(username: str) -> str:
    """
    Compute privacy-preserving hash of username.

    Events for the same user can be correlated without the username
    ever being written to the log.

    Args:
        username: The plaintext username

    Returns:
        Hex-encoded SHA-256 hash of the username
    """
    return hashlib.sha256(username.encode()).hexdigest()


def get_user_hash_short(username: str) -> str:
    """First 16 hex characters of the user hash, for display."""
    return get_user_hash(username)[:16]


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of security events that can be logged."""

    # Enrollment events
    REGISTERED = "registered"
    ENROLLED = "enrolled"
    SECRET_ROTATED = "secret_rotated"

    # Authentication events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED = "login_locked"
    TOTP_VERIFIED = "totp_verified"
    TOTP_FAILED = "totp_failed"
    LOGOUT = "logout"

    # System events
    SYSTEM_START = "system_start"


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    A security event in the audit trail.

    All user-identifying information is hashed for privacy.
    """
    event_type: EventType
    user_hash: str
    timestamp: int
    details: Dict[str, Any] = field(default_factory=dict)
    prev_hash: str = GENESIS_HASH

    def to_json(self) -> str:
        """Serialize the event as compact JSON."""
        return json.dumps({
            'version': EVENT_VERSION,
            'type': self.event_type.value,
            'user': self.user_hash,
            'time': self.timestamp,
            'details': self.details,
            'prev': self.prev_hash,
        }, separators=(',', ':'), sort_keys=True)

    @classmethod
    def from_json(cls, data_str: str) -> 'SecurityEvent':
        data = json.loads(data_str)
        return cls(
            event_type=EventType(data['type']),
            user_hash=data['user'],
            timestamp=data['time'],
            details=data.get('details', {}),
            prev_hash=data.get('prev', GENESIS_HASH),
        )

    @property
    def entry_hash(self) -> str:
        """SHA-256 of the serialized event; the next entry links to it."""
        return hashlib.sha256(self.to_json().encode()).hexdigest()

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} | "
            f"user:{self.user_hash[:8]}..."
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    Hash-chained security event log.

    Each entry records the hash of the entry before it, so editing or
    dropping any entry breaks verify_chain().

    Example:
        >>> audit = EventLogger()
        >>> audit.log_login("alice", success=True)
        >>> audit.verify_chain()
        True
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Args:
            clock: Time source for event timestamps
        """
        self._clock = clock
        self._events: List[SecurityEvent] = []
        self._callbacks: List[Callable[[SecurityEvent], None]] = []
        self._lock = threading.Lock()

        self._record(EventType.SYSTEM_START, SYSTEM_USER, {'node': 'twostep'})

    def _record(self, event_type: EventType, user_hash: str,
                details: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        with self._lock:
            prev_hash = self._events[-1].entry_hash if self._events else GENESIS_HASH
            event = SecurityEvent(
                event_type=event_type,
                user_hash=user_hash,
                timestamp=int(self._clock()),
                details=details or {},
                prev_hash=prev_hash,
            )
            self._events.append(event)
            callbacks = list(self._callbacks)

        logger.debug("Audit event %s user=%s", event_type.value, user_hash[:16])

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Audit callback %r failed", callback)

        return event

    def _log_user_event(self, event_type: EventType, username: str,
                        details: Optional[Dict[str, Any]] = None) -> SecurityEvent:
        return self._record(event_type, get_user_hash(username), details)

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        with self._lock:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    # ========================================================================
    # Enrollment Events
    # ========================================================================

    def log_registration(self, username: str) -> SecurityEvent:
        return self._log_user_event(EventType.REGISTERED, username)

    def log_enrollment(self, username: str) -> SecurityEvent:
        return self._log_user_event(EventType.ENROLLED, username)

    def log_secret_rotation(self, username: str) -> SecurityEvent:
        return self._log_user_event(EventType.SECRET_ROTATED, username)

    # ========================================================================
    # Login Events
    # ========================================================================

    def log_login(self, username: str, success: bool,
                  ip_address: Optional[str] = None) -> SecurityEvent:
        """
        Log a password-step attempt.

        Args:
            username: The username (will be hashed)
            success: Whether the password was accepted
            ip_address: Optional client IP (will be hashed)

        Returns:
            The logged event
        """
        details = {}
        if ip_address:
            details['ip_hash'] = hashlib.sha256(ip_address.encode()).hexdigest()[:16]

        return self._log_user_event(
            EventType.LOGIN_SUCCESS if success else EventType.LOGIN_FAILED,
            username,
            details,
        )

    def log_lockout(self, username: str, retry_after: int) -> SecurityEvent:
        return self._log_user_event(
            EventType.LOGIN_LOCKED, username, {'retry_after': retry_after})

    def log_totp(self, username: str, success: bool) -> SecurityEvent:
        """Log TOTP verification attempt."""
        return self._log_user_event(
            EventType.TOTP_VERIFIED if success else EventType.TOTP_FAILED,
            username,
        )

    def log_logout(self, username: str) -> SecurityEvent:
        return self._log_user_event(EventType.LOGOUT, username)

    # ========================================================================
    # Retrieval and Verification
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def get_user_events(self, username: str) -> List[SecurityEvent]:
        """All events recorded for `username`, oldest first."""
        user_hash = get_user_hash(username)
        return [e for e in self.get_all_events() if e.user_hash == user_hash]

    def get_events_by_type(self, event_type: EventType) -> List[SecurityEvent]:
        return [e for e in self.get_all_events() if e.event_type == event_type]

    def verify_chain(self) -> bool:
        """
        Check that every entry links to the hash of its predecessor.

        Returns:
            True if the log is intact
        """
        prev_hash = GENESIS_HASH
        for event in self.get_all_events():
            if event.prev_hash != prev_hash:
                return False
            prev_hash = event.entry_hash
        return True

    def export(self) -> List[str]:
        """Serialized entries, oldest first."""
        return [event.to_json() for event in self.get_all_events()]

    def get_statistics(self) -> Dict[str, int]:
        """Count of events per type."""
        stats: Dict[str, int] = {}
        for event in self.get_all_events():
            stats[event.event_type.value] = stats.get(event.event_type.value, 0) + 1
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
