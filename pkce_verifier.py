"""
PKCE (Proof Key for Code Exchange) - RFC 7636

Pure functions for generating code verifiers and computing/verifying code
challenges. Challenge comparison runs in constant time.
"""

import base64
import hashlib
import hmac
import re
import secrets
import string

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

METHOD_S256 = "S256"
METHOD_PLAIN = "plain"
SUPPORTED_METHODS = (METHOD_S256, METHOD_PLAIN)

# RFC 7636 Section 4.1 unreserved characters
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
_VERIFIER_PATTERN = re.compile(r'[A-Za-z0-9\-._~]+')


class InvalidParameter(ValueError):
    """Verifier length or character set is out of bounds."""


class UnsupportedMethod(ValueError):
    """Challenge method is neither S256 nor plain."""


def generate_code_verifier(length: int = 64) -> str:
    """
    Generate a random code verifier.

    Args:
        length: Number of characters, between 43 and 128

    Returns:
        Verifier string over the unreserved character set

    Raises:
        InvalidParameter: If length is out of range
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise InvalidParameter(
            f"Verifier length must be between {MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH} (got {length})"
        )
    return ''.join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def compute_challenge(verifier: str, method: str = METHOD_S256) -> str:
    """
    Derive the code challenge for a verifier.

    Args:
        verifier: Code verifier
        method: "S256" or "plain"

    Returns:
        Code challenge string

    Raises:
        UnsupportedMethod: For any other method
    """
    if method == METHOD_S256:
        digest = hashlib.sha256(verifier.encode('ascii')).digest()
        return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')
    if method == METHOD_PLAIN:
        return verifier
    raise UnsupportedMethod(f"Unsupported code_challenge_method: {method}")


def verify_challenge(verifier: str, stored_challenge: str, method: str) -> bool:
    """
    Check a presented verifier against the challenge stored with the code.

    Args:
        verifier: Verifier from the token request
        stored_challenge: Challenge from the authorization request
        method: Challenge method recorded at issuance

    Returns:
        True if the verifier matches
    """
    try:
        computed = compute_challenge(verifier, method)
    except (UnsupportedMethod, UnicodeEncodeError):
        return False

    expected = stored_challenge.encode('utf-8')
    actual = computed.encode('utf-8')

    # Keep the comparison cost independent of where the lengths diverge
    if len(actual) != len(expected):
        hmac.compare_digest(expected, expected)
        return False

    return hmac.compare_digest(actual, expected)


def validate_verifier_shape(verifier: str) -> bool:
    """Return True if the verifier has a legal length and character set."""
    if not verifier:
        return False
    if not MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH:
        return False
    return bool(_VERIFIER_PATTERN.fullmatch(verifier))
