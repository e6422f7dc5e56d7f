"""
User Registration Module

Creates credential records and runs TOTP enrollment.

Features:
- Argon2id password hashing (winner of Password Hashing Competition)
- Password strength validation
- Per-user MFA secret issuance with otpauth:// provisioning URI
- Enrollment confirmation and secret rotation

Security considerations:
- Never store plaintext passwords
- Salt is automatically handled by argon2-cffi
- Secrets are only returned to the caller at enrollment time
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .errors import UserAlreadyExists, WeakPassword
from .secret import SecretGenerator
from .store import CredentialRecord, CredentialStore, KeyedLock
from .totp import TOTPEngine
from ..integration.event_logger import get_user_hash_short


logger = logging.getLogger(__name__)

# Argon2id configuration
# - time_cost: number of iterations
# - memory_cost: memory usage in KiB
# - parallelism: number of parallel threads
# - hash_len: length of the hash output
# - salt_len: length of the random salt
ARGON2_CONFIG = {
    'time_cost': 3,          # Number of iterations
    'memory_cost': 65536,    # 64 MiB memory
    'parallelism': 4,        # 4 parallel threads
    'hash_len': 32,          # 256-bit hash
    'salt_len': 16,          # 128-bit salt
    'type': Type.ID          # Argon2id (hybrid)
}

DEFAULT_ISSUER = "twostep"

# Password strength requirements
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_REQUIREMENTS = {
    'min_length': PASSWORD_MIN_LENGTH,
    'max_length': PASSWORD_MAX_LENGTH,
    'require_uppercase': True,
    'require_lowercase': True,
    'require_digit': True,
    'require_special': True,
}

SPECIAL_CHARS = r'[!@#$%^&*(),.?":{}|<>\-_+=~\[\]/\\;\']'


class CredentialVerifier(Protocol):
    """Opaque password hashing capability used by the login core."""

    def hash_password(self, password: str) -> str:
        ...

    def verify_password(self, password: str, hash_str: str) -> bool:
        ...


class Argon2Verifier:
    """
    Password hasher/verifier using Argon2id.

    Example:
        >>> verifier = Argon2Verifier()
        >>> stored = verifier.hash_password("SecurePass123!")
        >>> verifier.verify_password("SecurePass123!", stored)
        True
    """

    def __init__(self, **kwargs):
        """
        Initialize the hasher with Argon2id.

        Args:
            **kwargs: Override default Argon2 parameters
        """
        config = ARGON2_CONFIG.copy()
        config.update(kwargs)

        self._hasher = PasswordHasher(
            time_cost=config['time_cost'],
            memory_cost=config['memory_cost'],
            parallelism=config['parallelism'],
            hash_len=config['hash_len'],
            salt_len=config['salt_len'],
            type=config['type']
        )

    def hash_password(self, password: str) -> str:
        """Hash a password; the result embeds salt and parameters."""
        return self._hasher.hash(password)

    def verify_password(self, password: str, hash_str: str) -> bool:
        """
        Verify a password against an Argon2id hash.

        Returns:
            True if password matches, False on mismatch or a malformed hash
        """
        try:
            return self._hasher.verify(hash_str, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hash_str: str) -> bool:
        """True if `hash_str` was made with older parameters."""
        return self._hasher.check_needs_rehash(hash_str)


def validate_password_strength(password: str,
                               requirements: Optional[Dict] = None) -> Dict:
    """
    Validate password against strength requirements.

    Args:
        password: Password to validate
        requirements: Policy dict (defaults to PASSWORD_REQUIREMENTS)

    Returns:
        Dict with 'valid' bool, 'errors' list and 'score'
    """
    req = PASSWORD_REQUIREMENTS.copy()
    if requirements:
        req.update(requirements)

    errors = []

    if len(password) < req['min_length']:
        errors.append(f"Must be at least {req['min_length']} characters")
    if len(password) > req['max_length']:
        errors.append(f"Must be at most {req['max_length']} characters")

    if req['require_uppercase'] and not re.search(r'[A-Z]', password):
        errors.append("Must contain at least one uppercase letter")

    if req['require_lowercase'] and not re.search(r'[a-z]', password):
        errors.append("Must contain at least one lowercase letter")

    if req['require_digit'] and not re.search(r'\d', password):
        errors.append("Must contain at least one digit")

    if req['require_special'] and not re.search(SPECIAL_CHARS, password):
        errors.append("Must contain at least one special character")

    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'score': calculate_password_score(password)
    }


def calculate_password_score(password: str) -> int:
    """
    Calculate a password strength score (0-100).
    """
    score = 0

    # Length scoring (up to 30 points)
    score += min(len(password) * 2, 30)

    # Character variety (up to 40 points)
    if re.search(r'[a-z]', password):
        score += 10
    if re.search(r'[A-Z]', password):
        score += 10
    if re.search(r'\d', password):
        score += 10
    if re.search(SPECIAL_CHARS, password):
        score += 10

    if len(password) >= 12:
        score += 10
    if len(password) >= 16:
        score += 10

    # Penalty for common patterns
    if re.search(r'(.)\1{2,}', password):
        score -= 10
    if re.search(r'(012|123|234|345|456|567|678|789)', password):
        score -= 10
    if re.search(r'(abc|bcd|cde|def|efg)', password.lower()):
        score -= 10

    return max(0, min(100, score))


@dataclass(frozen=True)
class Enrollment:
    """What the user needs to set up their authenticator app."""
    user_id: str
    secret_base32: str
    provisioning_uri: str

    def __repr__(self) -> str:
        return f"Enrollment(user_id={self.user_id!r})"


class UserRegistration:
    """
    User registration and TOTP enrollment.

    Example:
        >>> reg = UserRegistration(InMemoryCredentialStore())
        >>> enrollment = reg.register_user("alice", "SecurePass123!")
        >>> enrollment.provisioning_uri.startswith("otpauth://totp/")
        True
    """

    def __init__(self, store: CredentialStore,
                 verifier: Optional[CredentialVerifier] = None,
                 generator: Optional[SecretGenerator] = None,
                 engine: Optional[TOTPEngine] = None,
                 issuer: str = DEFAULT_ISSUER,
                 requirements: Optional[Dict] = None,
                 event_logger=None):
        """
        Args:
            store: Credential store to write records into
            verifier: Password hashing capability (Argon2id by default)
            generator: Secret generator
            engine: TOTP engine used for the provisioning URI and confirmation
            issuer: Service name shown in authenticator apps
            requirements: Password policy overrides
            event_logger: Optional EventLogger for the audit trail
        """
        self._store = store
        self._verifier = verifier or Argon2Verifier()
        self._generator = generator or SecretGenerator()
        self._engine = engine or TOTPEngine()
        self._issuer = issuer
        self._requirements = requirements
        self._event_logger = event_logger
        self._user_locks = KeyedLock()

    def _enrollment(self, record: CredentialRecord) -> Enrollment:
        return Enrollment(
            user_id=record.user_id,
            secret_base32=record.mfa_secret.base32,
            provisioning_uri=self._engine.provisioning_uri(
                record.mfa_secret, record.user_id, self._issuer),
        )

    def register_user(self, user_id: str, password: str) -> Enrollment:
        """
        Register a new user with a hashed password and a fresh MFA secret.

        Args:
            user_id: Unique username
            password: Plaintext password (will be hashed)

        Returns:
            Enrollment with the base32 secret and provisioning URI

        Raises:
            ValueError: If user_id is empty
            WeakPassword: If the password fails the strength policy
            UserAlreadyExists: If user_id is taken
            EntropyUnavailable: If no secret can be generated
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if not password:
            raise WeakPassword(["Password is required"])

        validation = validate_password_strength(password, self._requirements)
        if not validation['valid']:
            raise WeakPassword(validation['errors'])

        with self._user_locks.hold(user_id):
            if self._store.get(user_id) is not None:
                raise UserAlreadyExists()

            record = CredentialRecord(
                user_id=user_id,
                password_hash=self._verifier.hash_password(password),
                mfa_secret=self._generator.generate(),
                enrolled=False,
                created_at=time.time(),
            )
            self._store.put(user_id, record)

        logger.info("Registered user %s", get_user_hash_short(user_id))
        if self._event_logger is not None:
            self._event_logger.log_registration(user_id)

        return self._enrollment(record)

    def confirm_enrollment(self, user_id: str, code: str,
                           now: Optional[float] = None) -> bool:
        """
        Confirm TOTP enrollment by verifying a code from the user's app.

        Returns:
            True if the code was valid and the record is now enrolled
        """
        with self._user_locks.hold(user_id):
            record = self._store.get(user_id)
            if record is None:
                return False
            if not self._engine.verify(record.mfa_secret, code, now):
                return False
            if not record.enrolled:
                self._store.put(user_id, record.mark_enrolled())

        if self._event_logger is not None:
            self._event_logger.log_enrollment(user_id)
        return True

    def rotate_secret(self, user_id: str) -> Enrollment:
        """
        Issue a new MFA secret for re-enrollment.

        Raises:
            KeyError: If the user does not exist
        """
        with self._user_locks.hold(user_id):
            record = self._store.get(user_id)
            if record is None:
                raise KeyError(user_id)
            record = record.with_secret(self._generator.generate())
            self._store.put(user_id, record)

        logger.info("Rotated MFA secret for user %s", get_user_hash_short(user_id))
        if self._event_logger is not None:
            self._event_logger.log_secret_rotation(user_id)
        return self._enrollment(record)

    def is_enrolled(self, user_id: str) -> bool:
        record = self._store.get(user_id)
        return bool(record and record.enrolled)

