"""
TOTP (Time-based One-Time Password) Implementation

Implements RFC 6238 TOTP on top of RFC 4226 HOTP for two-factor
authentication.

Features:
- HOTP/TOTP code generation
- Verification with configurable clock drift window
- Constant-time code comparison
- Fails closed on malformed codes (returns False, never raises)

Compatible with Google Authenticator, Authy, Microsoft Authenticator
and any other RFC 6238 authenticator.
"""

import hmac
import hashlib
import math
import struct
import time
from typing import Optional

from .secret import Secret, provisioning_uri


# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_ALGORITHM = 'SHA1'   # Hash algorithm
TOTP_DRIFT_TOLERANCE = 1  # Accept codes from +/- this many time steps

MIN_DIGITS = 6
MAX_DIGITS = 8
MAX_COUNTER = 2 ** 64 - 1

HASH_ALGORITHMS = {
    'SHA1': hashlib.sha1,
    'SHA256': hashlib.sha256,
    'SHA512': hashlib.sha512,
}


def _hash_algo(algorithm: str):
    try:
        return HASH_ALGORITHMS[algorithm.upper()]
    except (KeyError, AttributeError):
        raise ValueError(f"Unsupported hash algorithm: {algorithm!r}") from None


def _check_params(digits: int, time_step: int) -> None:
    if not MIN_DIGITS <= digits <= MAX_DIGITS:
        raise ValueError(f"digits must be between {MIN_DIGITS} and {MAX_DIGITS}")
    if time_step <= 0:
        raise ValueError("time_step must be positive")


def time_counter(timestamp: float, time_step: int = TOTP_TIME_STEP) -> int:
    """
    Get the time counter value for TOTP.

    Args:
        timestamp: Unix timestamp
        time_step: Time step in seconds

    Returns:
        Time counter (T = floor(time / time_step))
    """
    return int(timestamp // time_step)


def hotp(secret: Secret, counter: int, digits: int = TOTP_DIGITS,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate HOTP (HMAC-based OTP) value.

    Implements RFC 4226.

    Args:
        secret: Shared secret key
        counter: Counter value (8-byte unsigned integer)
        digits: Number of digits in OTP
        algorithm: Hash algorithm (SHA1, SHA256, SHA512)

    Returns:
        OTP string with exactly `digits` characters
    """
    if not 0 <= counter <= MAX_COUNTER:
        raise ValueError("counter must fit in an unsigned 64-bit integer")

    # Pack counter as 8-byte big-endian integer
    counter_bytes = struct.pack('>Q', counter)
    hmac_hash = hmac.new(secret.raw, counter_bytes, _hash_algo(algorithm)).digest()

    # Dynamic truncation: low nibble of the last byte picks the offset
    offset = hmac_hash[-1] & 0x0F
    truncated = struct.unpack('>I', hmac_hash[offset:offset + 4])[0]

    # Clear the most significant bit (31-bit result)
    truncated &= 0x7FFFFFFF

    otp = truncated % (10 ** digits)
    return str(otp).zfill(digits)


def totp(secret: Secret, timestamp: Optional[float] = None,
         digits: int = TOTP_DIGITS,
         time_step: int = TOTP_TIME_STEP,
         algorithm: str = TOTP_ALGORITHM) -> str:
    """
    Generate TOTP (Time-based OTP) value.

    Implements RFC 6238.

    Args:
        secret: Shared secret key
        timestamp: Unix timestamp (uses current time if None)
        digits: Number of digits in OTP (6-8)
        time_step: Time step in seconds
        algorithm: Hash algorithm

    Returns:
        TOTP string with specified number of digits
    """
    _check_params(digits, time_step)
    if timestamp is None:
        timestamp = time.time()
    if not math.isfinite(timestamp) or timestamp < 0:
        raise ValueError("timestamp must be finite and not negative")
    return hotp(secret, time_counter(timestamp, time_step), digits, algorithm)


def _normalize_code(code, digits: int) -> Optional[str]:
    """Return the code stripped of spaces, or None if it cannot be valid."""
    if not isinstance(code, str):
        return None
    code = code.replace(' ', '').strip()
    if len(code) != digits:
        return None
    # str.isdigit() accepts non-ASCII digits like '٣'
    if not (code.isascii() and code.isdigit()):
        return None
    return code


def verify_totp(secret: Secret, code: str,
                timestamp: Optional[float] = None,
                digits: int = TOTP_DIGITS,
                time_step: int = TOTP_TIME_STEP,
                algorithm: str = TOTP_ALGORITHM,
                drift_tolerance: int = TOTP_DRIFT_TOLERANCE) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Checks the code against the current time step and +/- drift_tolerance
    time steps to account for clock drift. Every candidate is compared
    with hmac.compare_digest, and all candidates are checked even after
    a match.

    Args:
        secret: Shared secret key
        code: OTP code to verify
        timestamp: Unix timestamp (uses current time if None)
        digits: Expected number of digits
        time_step: Time step in seconds
        algorithm: Hash algorithm
        drift_tolerance: Number of time steps to check in each direction

    Returns:
        True if code is valid, False otherwise (including malformed input)
    """
    _check_params(digits, time_step)
    if drift_tolerance < 0:
        raise ValueError("drift_tolerance must not be negative")

    if timestamp is None:
        timestamp = time.time()

    code = _normalize_code(code, digits)
    if code is None or not math.isfinite(timestamp) or timestamp < 0:
        return False

    current_counter = time_counter(timestamp, time_step)

    matched = False
    for offset in range(-drift_tolerance, drift_tolerance + 1):
        counter = current_counter + offset
        if not 0 <= counter <= MAX_COUNTER:
            continue
        expected = hotp(secret, counter, digits, algorithm)
        if hmac.compare_digest(code, expected):
            matched = True

    return matched


def remaining_seconds(timestamp: Optional[float] = None,
                      time_step: int = TOTP_TIME_STEP) -> int:
    """Seconds until the code for `timestamp` rolls over."""
    if timestamp is None:
        timestamp = time.time()
    return time_step - (int(timestamp) % time_step)


class TOTPEngine:
    """
    TOTP generator and verifier with a fixed verification policy.

    The engine holds only configuration, so one instance can be shared
    by every request handler.

    Example:
        >>> engine = TOTPEngine()
        >>> code = engine.code(secret, 59)
        >>> engine.verify(secret, code, 59)
        True
    """

    def __init__(self, digits: int = TOTP_DIGITS,
                 time_step: int = TOTP_TIME_STEP,
                 drift_tolerance: int = TOTP_DRIFT_TOLERANCE,
                 algorithm: str = TOTP_ALGORITHM):
        """
        Initialize TOTP engine.

        Args:
            digits: Number of digits in OTP (6-8)
            time_step: Time step in seconds
            drift_tolerance: Steps accepted on either side of now. Each
                extra step widens the set of valid codes by two.
            algorithm: Hash algorithm
        """
        _check_params(digits, time_step)
        if drift_tolerance < 0:
            raise ValueError("drift_tolerance must not be negative")
        _hash_algo(algorithm)

        self._digits = digits
        self._time_step = time_step
        self._drift_tolerance = drift_tolerance
        self._algorithm = algorithm.upper()

    @property
    def digits(self) -> int:
        return self._digits

    @property
    def time_step(self) -> int:
        return self._time_step

    @property
    def drift_tolerance(self) -> int:
        return self._drift_tolerance

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def code(self, secret: Secret, timestamp: Optional[float] = None) -> str:
        """Generate the code for `timestamp` (current time if None)."""
        return totp(secret, timestamp, self._digits, self._time_step, self._algorithm)

    def verify(self, secret: Secret, code: str, now: Optional[float] = None) -> bool:
        """Verify `code` at `now` within the configured drift window."""
        return verify_totp(
            secret,
            code,
            now,
            self._digits,
            self._time_step,
            self._algorithm,
            self._drift_tolerance
        )

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        return remaining_seconds(now, self._time_step)

    def provisioning_uri(self, secret: Secret, account_label: str,
                         issuer: Optional[str] = None) -> str:
        """otpauth:// URI advertising this engine's digits, period and algorithm."""
        return provisioning_uri(
            secret,
            account_label,
            issuer,
            digits=self._digits,
            period=self._time_step,
            algorithm=self._algorithm,
        )

    def __repr__(self) -> str:
        return (f"TOTPEngine(digits={self._digits}, time_step={self._time_step}, "
                f"drift_tolerance={self._drift_tolerance}, algorithm='{self._algorithm}')")
