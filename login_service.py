"""
Password login step.

Verifies username and password and decides which credential the caller gets:
a full session when MFA is off, or a short-lived MFA-pending token when a
second factor is still required.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from audit_logger import AuditAction, AuditLogger
from session_tokens import SessionTokenService
from user_directory import UserDirectory

INVALID_CREDENTIALS = "Invalid username or password"


class LoginError(Exception):
    """Credentials rejected. The message never says which part was wrong."""

    def __init__(self, message: str = INVALID_CREDENTIALS):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": "invalid_credentials", "message": self.message}


@dataclass
class LoginResult:
    token: str
    user_id: str
    username: str
    roles: List[str]
    mfa_required: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "username": self.username,
            "roles": self.roles,
            "mfaRequired": self.mfa_required,
        }


class LoginService:
    """First authentication factor."""

    def __init__(self, directory: UserDirectory, session_tokens: SessionTokenService, audit: AuditLogger):
        self.directory = directory
        self.session_tokens = session_tokens
        self.audit = audit

    def login(self, username: Optional[str], password: Optional[str]) -> LoginResult:
        """
        Check a username/password pair.

        Args:
            username: Login name
            password: Plaintext password

        Returns:
            LoginResult; mfa_required=True means the token is a pending
            credential that only the MFA verification endpoints accept

        Raises:
            LoginError: Unknown user, wrong password or disabled account
        """
        user = self.directory.get_by_username(username)
        reason = None
        if user is None:
            reason = "unknown_user"
        elif not self.directory.verify_password(user, password):
            reason = "bad_password"
        elif not user.enabled:
            reason = "account_disabled"

        if reason:
            self.audit.log_event(
                action=AuditAction.LOGIN_FAILED,
                success=False,
                username=username,
                resource_type="USER",
                resource_id=user.id if user else None,
                details={"reason": reason},
            )
            logging.warning(f"Login failed for {username}: {reason}")
            raise LoginError()

        self.directory.record_login(user.id)

        if user.mfa_enabled:
            token = self.session_tokens.issue_pending(user.username, user.roles)
            action = AuditAction.LOGIN_MFA_REQUIRED
        else:
            token = self.session_tokens.issue_session(user.username, user.roles)
            action = AuditAction.LOGIN_SUCCESS

        self.audit.log_event(
            action=action,
            success=True,
            username=user.username,
            resource_type="USER",
            resource_id=user.id,
        )
        logging.info(f"Password verified for {user.username} (mfa_required={user.mfa_enabled})")

        return LoginResult(
            token=token,
            user_id=user.id,
            username=user.username,
            roles=user.roles,
            mfa_required=user.mfa_enabled,
        )
