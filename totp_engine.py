"""
TOTP Engine - RFC 4226 (HOTP) and RFC 6238 (TOTP)

Thin layer over pyotp for secret generation, one-time code computation and
verification with clock-drift tolerance, plus single-use backup codes.

Backup codes are only ever persisted as SHA-256 hashes of their normalized
form (uppercase, hyphen removed). The plaintext is returned to the caller once.
"""

import binascii
import hashlib
import hmac
import secrets
import string
from typing import Iterable, List, Optional
from urllib.parse import urlencode

import pyotp

SECRET_LENGTH = 32  # Base32 characters, 160 bits
DIGITS = 6
TIME_STEP = 30
DEFAULT_DRIFT_STEPS = 1

BACKUP_CODE_COUNT = 10
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_GROUP = 4

_MAX_COUNTER = 2 ** 64 - 1


def generate_secret() -> str:
    """Generate a Base32 secret from 160 random bits."""
    return pyotp.random_base32(SECRET_LENGTH)


def _normalize_secret(secret: str) -> str:
    # pyotp restores missing padding and accepts lowercase, but not spaces
    return secret.replace(' ', '').upper()


def hotp(secret: str, counter: int) -> str:
    """
    Compute an HOTP code (RFC 4226).

    Args:
        secret: Base32-encoded shared secret
        counter: Moving factor, unsigned 64-bit

    Returns:
        6-digit code with leading zeros preserved

    Raises:
        ValueError: If the counter is outside the unsigned 64-bit range
            or the secret is not valid Base32
    """
    if not 0 <= counter <= _MAX_COUNTER:
        raise ValueError(f"HOTP counter out of range: {counter}")
    return pyotp.HOTP(_normalize_secret(secret), digits=DIGITS).at(counter)


def totp(secret: str, at: Optional[float] = None, step: int = TIME_STEP) -> str:
    """
    Compute the TOTP code for a point in time (RFC 6238).

    Args:
        secret: Base32-encoded shared secret
        at: Unix time in seconds (default: now)
        step: Time step in seconds

    Returns:
        6-digit code
    """
    generator = pyotp.TOTP(_normalize_secret(secret), digits=DIGITS, interval=step)
    if at is None:
        return generator.now()
    return generator.at(at)


def verify(
    secret: str,
    code: str,
    at: Optional[float] = None,
    drift_steps: int = DEFAULT_DRIFT_STEPS,
    step: int = TIME_STEP
) -> bool:
    """
    Verify a TOTP code allowing for clock drift.

    Args:
        secret: Base32-encoded shared secret
        code: Code submitted by the user
        at: Unix time in seconds (default: now)
        drift_steps: Steps accepted on either side of the current one
        step: Time step in seconds

    Returns:
        True if the code matches any step in the window
    """
    if not isinstance(code, str) or len(code) != DIGITS or not code.isdigit() or not code.isascii():
        return False
    generator = pyotp.TOTP(_normalize_secret(secret), digits=DIGITS, interval=step)
    try:
        return generator.verify(code, for_time=at, valid_window=drift_steps)
    except (binascii.Error, ValueError):
        # Undecodable secret, or a window reaching before the epoch
        return False

def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """
    Generate single-use recovery codes formatted XXXX-XXXX.

    Args:
        count: Number of codes

    Returns:
        Plaintext codes; the caller hashes them before storing
    """
    codes = []
    for _ in range(count):
        raw = ''.join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_GROUP * 2))
        codes.append(f"{raw[:BACKUP_CODE_GROUP]}-{raw[BACKUP_CODE_GROUP:]}")
    return codes


def normalize_backup_code(code: str) -> str:
    return code.strip().upper().replace('-', '')


def hash_backup_code(code: str) -> str:
    """SHA-256 hex digest of the normalized code."""
    return hashlib.sha256(normalize_backup_code(code).encode('utf-8')).hexdigest()


def verify_backup_code(code: str, hashed_codes: Iterable[str]) -> bool:
    """
    Check a backup code against stored hashes.

    The whole list is scanned regardless of where a match occurs. Removing the
    matched hash is the caller's job.

    Args:
        code: Code submitted by the user
        hashed_codes: Stored SHA-256 hex digests

    Returns:
        True if the code's hash is in the list
    """
    if not isinstance(code, str) or not code.strip():
        return False
    candidate = hash_backup_code(code).encode('ascii')
    found = False
    for stored in hashed_codes:
        if hmac.compare_digest(candidate, stored.encode('ascii')):
            found = True
    return found


def totp_uri(secret: str, issuer: str, account: str) -> str:
    """
    Build an otpauth:// provisioning URI for authenticator apps.

    pyotp leaves out parameters that equal the defaults. Some authenticator
    apps mishandle their absence, so they are always appended.

    Args:
        secret: Base32-encoded shared secret
        issuer: Service name shown in the app
        account: Account label, usually the user's email

    Returns:
        otpauth://totp/ URI
    """
    uri = pyotp.TOTP(secret, digits=DIGITS, interval=TIME_STEP).provisioning_uri(name=account, issuer_name=issuer)
    explicit = urlencode({'algorithm': 'SHA1', 'digits': DIGITS, 'period': TIME_STEP})
    return f"{uri}&{explicit}"
