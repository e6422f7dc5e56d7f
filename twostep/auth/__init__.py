# Authentication Module
"""
Two-step authentication core:
- Shared secret generation and encodings - secret.py
- TOTP/HOTP (RFC 6238 / RFC 4226) - totp.py
- Credential records and storage - store.py
- Password hashing (Argon2id) and TOTP enrollment - registration.py
- Password -> MFA -> session state machine, rate limiting - login.py
- Error types - errors.py

Security features:
- Constant-time code comparison
- Cryptographically secure random secrets and identifiers
- Identical failures for unknown users and wrong passwords
- Single-use MFA tickets
- Rate limiting against brute-force attacks
"""

from .errors import (
    AuthError,
    EntropyUnavailable,
    InvalidCredentials,
    TicketExpired,
    TicketAlreadyUsed,
    InvalidMfaCode,
    MalformedInput,
    TooManyAttempts,
    UserAlreadyExists,
    WeakPassword,
)

from .secret import (
    Secret,
    SecretGenerator,
    generate_secret,
    secret_to_base32,
    base32_to_secret,
    provisioning_uri,
)

from .totp import (
    TOTPEngine,
    hotp,
    totp,
    verify_totp,
    time_counter,
)

from .store import (
    CredentialRecord,
    CredentialStore,
    InMemoryCredentialStore,
    KeyedLock,
)

from .registration import (
    Argon2Verifier,
    CredentialVerifier,
    Enrollment,
    UserRegistration,
    validate_password_strength,
)

from .login import (
    AuthSessionMachine,
    AuthState,
    AuthenticatedSession,
    PendingAuthTicket,
    RateLimiter,
)

__all__ = [
    # Errors
    'AuthError',
    'EntropyUnavailable',
    'InvalidCredentials',
    'TicketExpired',
    'TicketAlreadyUsed',
    'InvalidMfaCode',
    'MalformedInput',
    'TooManyAttempts',
    'UserAlreadyExists',
    'WeakPassword',
    # Secrets
    'Secret',
    'SecretGenerator',
    'generate_secret',
    'secret_to_base32',
    'base32_to_secret',
    'provisioning_uri',
    # TOTP
    'TOTPEngine',
    'hotp',
    'totp',
    'verify_totp',
    'time_counter',
    # Storage
    'CredentialRecord',
    'CredentialStore',
    'InMemoryCredentialStore',
    'KeyedLock',
    # Registration
    'Argon2Verifier',
    'CredentialVerifier',
    'Enrollment',
    'UserRegistration',
    'validate_password_strength',
    # Login
    'AuthSessionMachine',
    'AuthState',
    'AuthenticatedSession',
    'PendingAuthTicket',
    'RateLimiter',
]
