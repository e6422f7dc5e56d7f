"""
Authentication error types.

Every failure of the two-step login core is raised as a subclass of
AuthError. The HTTP layer decides what to show the user; `message` is
always safe to display and never reveals whether an account exists.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for all authentication failures."""

    code = "auth_error"
    default_message = "Authentication failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class EntropyUnavailable(AuthError):
    """
    The secure random source could not be read.

    This is the one failure that signals an unsafe environment; callers
    should alarm and stop issuing secrets.
    """

    code = "entropy_unavailable"
    default_message = "Secure random source unavailable"


class InvalidCredentials(AuthError):
    """Unknown user or wrong password (deliberately indistinguishable)."""

    code = "invalid_credentials"
    default_message = "Invalid username or password"


class TicketExpired(AuthError):
    code = "ticket_expired"
    default_message = "Login expired, please sign in again"


class TicketAlreadyUsed(AuthError):
    code = "ticket_already_used"
    default_message = "This login has already been completed"


class InvalidMfaCode(AuthError):
    code = "invalid_mfa_code"
    default_message = "Invalid MFA code"


class MalformedInput(InvalidMfaCode):
    """Badly formed code; reported exactly like a wrong code."""


class TooManyAttempts(AuthError):
    """Raised while an identifier is locked out after repeated failures."""

    code = "too_many_attempts"
    default_message = "Too many failed attempts, try again later"

    def __init__(self, retry_after: int = 0, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message)


class UserAlreadyExists(AuthError):
    code = "user_exists"
    default_message = "Username already exists"


class WeakPassword(AuthError, ValueError):
    """Password rejected by the strength policy."""

    code = "weak_password"
    default_message = "Password too weak"

    def __init__(self, errors=None, message: Optional[str] = None):
        self.errors = list(errors or [])
        if message is None and self.errors:
            message = f"Password too weak: {', '.join(self.errors)}"
        super().__init__(message)
