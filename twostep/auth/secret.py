"""
Shared Secret Generation

Produces the per-user secrets that TOTP codes are derived from.

Features:
- CSPRNG-backed secret generation (160-bit default, RFC 4226 recommendation)
- Base32 display/storage encoding (what authenticator apps accept)
- otpauth:// provisioning URIs for QR enrollment

Rendering the URI as a QR code is left to the caller.
"""

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import quote

from .errors import EntropyUnavailable


logger = logging.getLogger(__name__)

# Secret configuration
TOTP_SECRET_BYTES = 20      # Minimum secret length (160 bits, matches SHA-1 block use)
PROVISIONING_SCHEME = "otpauth"


@dataclass(frozen=True)
class Secret:
    """
    Opaque shared secret.

    The raw bytes are never included in repr() so secrets do not leak
    into logs or tracebacks.
    """
    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)) or not self.raw:
            raise ValueError("Secret must be non-empty bytes")
        if isinstance(self.raw, bytearray):
            object.__setattr__(self, 'raw', bytes(self.raw))

    def __len__(self) -> int:
        return len(self.raw)

    def __repr__(self) -> str:
        return f"Secret(<{len(self.raw)} bytes>)"

    @property
    def base32(self) -> str:
        """Base32-encoded secret for storage and manual entry."""
        return secret_to_base32(self)

    @classmethod
    def from_base32(cls, encoded: str) -> 'Secret':
        return base32_to_secret(encoded)


def generate_secret(length: int = TOTP_SECRET_BYTES,
                    random_source: Callable[[int], bytes] = secrets.token_bytes) -> Secret:
    """
    Generate a cryptographically secure random secret.

    Args:
        length: Secret length in bytes (at least 20)
        random_source: Callable returning `length` random bytes

    Returns:
        New Secret

    Raises:
        ValueError: If length is below the minimum
        EntropyUnavailable: If the random source cannot deliver
    """
    if length < TOTP_SECRET_BYTES:
        raise ValueError(f"Secret length must be at least {TOTP_SECRET_BYTES} bytes")

    try:
        raw = random_source(length)
    except (OSError, NotImplementedError) as e:
        logger.critical("Secure random source failed: %s", e)
        raise EntropyUnavailable() from e

    if not isinstance(raw, bytes) or len(raw) != length:
        logger.critical("Secure random source returned a short read")
        raise EntropyUnavailable()

    return Secret(raw)


def secret_to_base32(secret: Secret) -> str:
    """
    Encode secret as base32 string (for authenticator apps).

    Returns:
        Base32-encoded string (no padding)
    """
    return base64.b32encode(secret.raw).decode('ascii').rstrip('=')


def base32_to_secret(encoded: str) -> Secret:
    """
    Decode a base32 secret string.

    Accepts lower case, embedded spaces and missing padding, as users
    type secrets by hand.

    Raises:
        ValueError: If the string is not valid base32
    """
    if not isinstance(encoded, str):
        raise ValueError("Base32 secret must be a string")

    cleaned = encoded.replace(' ', '').replace('-', '').upper()
    # Add padding if needed
    padding = 8 - (len(cleaned) % 8)
    if padding != 8:
        cleaned += '=' * padding

    try:
        raw = base64.b32decode(cleaned)
    except binascii.Error as e:
        raise ValueError("Invalid base32 secret") from e

    return Secret(raw)


def provisioning_uri(secret: Secret, account_label: str,
                     issuer: Optional[str] = None,
                     digits: int = 6,
                     period: int = 30,
                     algorithm: str = 'SHA1') -> str:
    """
    Build an otpauth:// URI for QR code enrollment.

    Follows the Key Uri Format understood by Google Authenticator,
    Authy and friends:
    otpauth://totp/Issuer:account?secret=...&issuer=Issuer&...

    Args:
        secret: Shared secret
        account_label: Account name shown in the app (usually username/email)
        issuer: Service name shown in the app
        digits: Code length
        period: Time step in seconds
        algorithm: HMAC hash name

    Returns:
        otpauth:// URI string
    """
    if not account_label:
        raise ValueError("Account label is required")
    if issuer is not None and ':' in issuer:
        raise ValueError("Issuer must not contain ':'")

    if issuer:
        label = f"{quote(issuer, safe='')}:{quote(account_label, safe='')}"
    else:
        label = quote(account_label, safe='')

    params = {'secret': secret_to_base32(secret)}
    if issuer:
        params['issuer'] = issuer
    params['algorithm'] = algorithm.upper()
    params['digits'] = str(digits)
    params['period'] = str(period)

    param_str = '&'.join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())
    return f"{PROVISIONING_SCHEME}://totp/{label}?{param_str}"


class SecretGenerator:
    """
    Issues new shared secrets and their encodings.

    Example:
        >>> gen = SecretGenerator()
        >>> secret = gen.generate()
        >>> uri = gen.to_provisioning_uri(secret, "alice", "twostep")
    """

    def __init__(self, length: int = TOTP_SECRET_BYTES,
                 random_source: Callable[[int], bytes] = secrets.token_bytes):
        if length < TOTP_SECRET_BYTES:
            raise ValueError(f"Secret length must be at least {TOTP_SECRET_BYTES} bytes")
        self._length = length
        self._random_source = random_source

    @property
    def length(self) -> int:
        return self._length

    def generate(self) -> Secret:
        return generate_secret(self._length, self._random_source)

    def to_base32(self, secret: Secret) -> str:
        return secret_to_base32(secret)

    def to_provisioning_uri(self, secret: Secret, account_label: str,
                            issuer: Optional[str] = None) -> str:
        return provisioning_uri(secret, account_label, issuer)
