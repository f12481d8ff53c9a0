"""
Session and MFA-pending credentials.

A session token is a signed JWT carrying the username as subject, the user's
roles and an mfaPending flag. Pending tokens are short-lived and are accepted
only by the MFA verification endpoints; everything else requires a token with
mfaPending=false.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import jwt

from config import ServerConfig
from jwt_signer import JwtSigner

SESSION_TOKEN_TYPE = "session"


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session credential."""
    subject: str
    roles: List[str]
    mfa_pending: bool
    issued_at: int
    expires_at: int


class SessionTokenService:
    """Issues and verifies session credentials."""

    def __init__(self, signer: JwtSigner, config: ServerConfig):
        self.signer = signer
        self.session_lifetime = config.session_token_lifetime
        self.pending_lifetime = config.mfa_pending_token_lifetime

    def _issue(self, username: str, roles: List[str], mfa_pending: bool, lifetime: int) -> str:
        now = int(time.time())
        return self.signer.sign({
            "sub": username,
            "iss": self.signer.issuer,
            "roles": list(roles),
            "mfaPending": mfa_pending,
            "token_type": SESSION_TOKEN_TYPE,
            "iat": now,
            "exp": now + lifetime,
        })

    def issue_session(self, username: str, roles: List[str]) -> str:
        """Full session after all required factors are verified."""
        return self._issue(username, roles, False, self.session_lifetime)

    def issue_pending(self, username: str, roles: List[str]) -> str:
        """Short-lived credential for a password-verified user with MFA outstanding."""
        return self._issue(username, roles, True, self.pending_lifetime)

    def decode(self, token: Optional[str]) -> Optional[SessionClaims]:
        """
        Verify a session credential.

        Args:
            token: Compact JWT from the Authorization header or session cookie

        Returns:
            SessionClaims, or None if the token is missing, invalid, expired
            or not a session credential
        """
        if not token:
            return None
        try:
            claims = self.signer.decode(token)
        except jwt.InvalidTokenError as e:
            logging.debug(f"Rejected session token: {e}")
            return None

        if claims.get("token_type") != SESSION_TOKEN_TYPE:
            return None

        return SessionClaims(
            subject=claims["sub"],
            roles=list(claims.get("roles") or []),
            mfa_pending=bool(claims.get("mfaPending", False)),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )
