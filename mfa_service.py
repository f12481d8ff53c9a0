"""
MFA Service

TOTP multi-factor authentication on top of the user directory:

    password_verified -> mfa off: session issued
                      -> mfa on:  pending issued -> totp/backup verified -> session issued

Every operation is audited. Failed attempts use their own action names
(MFA_SETUP_FAILED, MFA_VERIFY_FAILED, MFA_BACKUP_CODE_FAILED,
MFA_DISABLE_FAILED, MFA_BACKUP_REGEN_FAILED) so monitoring can alert on them.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import totp_engine
from audit_logger import AuditAction, AuditLogger
from config import ServerConfig
from oauth_errors import MfaError, MfaErrorKind
from session_tokens import SessionTokenService
from user_directory import UserDirectory, UserRecord

LOW_BACKUP_CODE_THRESHOLD = 2

RESOURCE_TYPE = "USER"


@dataclass
class MfaSetup:
    """Material for enrolling an authenticator app. MFA is not active yet."""
    secret: str
    qr_code_uri: str
    issuer: str
    account_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "secret": self.secret,
            "qrCodeUri": self.qr_code_uri,
            "issuer": self.issuer,
            "accountName": self.account_name,
        }


@dataclass
class MfaLoginResult:
    """Outcome of a successful second-factor check."""
    token: str
    username: str
    roles: List[str]
    backup_code_used: bool = False
    remaining_backup_codes: Optional[int] = None

    @property
    def low_backup_codes(self) -> bool:
        return (
            self.remaining_backup_codes is not None
            and self.remaining_backup_codes <= LOW_BACKUP_CODE_THRESHOLD
        )

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "success": True,
            "token": self.token,
            "username": self.username,
            "roles": self.roles,
            "backupCodeUsed": self.backup_code_used,
        }
        if self.backup_code_used:
            body["message"] = "Backup code verified"
            body["remainingBackupCodes"] = self.remaining_backup_codes
            if self.low_backup_codes:
                body["warning"] = (
                    f"You have only {self.remaining_backup_codes} backup codes remaining. "
                    "Consider generating new ones."
                )
        else:
            body["message"] = "MFA verification successful"
        return body


@dataclass
class MfaStatus:
    mfa_enabled: bool
    mfa_enabled_at: Optional[str]
    backup_codes_remaining: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mfaEnabled": self.mfa_enabled,
            "mfaEnabledAt": self.mfa_enabled_at,
            "backupCodesRemaining": self.backup_codes_remaining,
        }


class MfaService:
    """TOTP enrollment and second-factor verification."""

    def __init__(
        self,
        directory: UserDirectory,
        session_tokens: SessionTokenService,
        audit: AuditLogger,
        config: ServerConfig,
        clock=time.time
    ):
        self.directory = directory
        self.session_tokens = session_tokens
        self.audit = audit
        self.issuer = config.mfa_issuer
        self.drift_steps = config.totp_drift_steps
        self.backup_code_count = config.backup_code_count
        self.clock = clock

    def _find_user(self, user_id: str) -> UserRecord:
        user = self.directory.get(user_id)
        if user is None:
            raise MfaError(MfaErrorKind.USER_NOT_FOUND)
        return user

    def _require_enabled(self, user: UserRecord, failure_action: AuditAction) -> None:
        if not user.mfa_enabled or not user.mfa_secret:
            self._audit(failure_action, user, False, reason="not_enabled")
            raise MfaError(MfaErrorKind.NOT_ENABLED)

    def _audit(self, action: AuditAction, user: UserRecord, success: bool, **details) -> None:
        self.audit.log_event(
            action=action,
            success=success,
            username=user.username,
            resource_type=RESOURCE_TYPE,
            resource_id=user.id,
            details=details,
        )

    def _new_backup_codes(self):
        codes = totp_engine.generate_backup_codes(self.backup_code_count)
        return codes, [totp_engine.hash_backup_code(c) for c in codes]

    def _verify_totp(self, secret: str, code: Optional[str], now: Optional[float]) -> bool:
        return totp_engine.verify(
            secret,
            code.strip() if isinstance(code, str) else code,
            at=self.clock() if now is None else now,
            drift_steps=self.drift_steps
        )

    def initiate_setup(self, user_id: str) -> MfaSetup:
        """
        Start enrollment: generate a secret and provisioning URI.

        Args:
            user_id: Authenticated user

        Returns:
            MfaSetup; nothing is persisted until complete_setup succeeds

        Raises:
            MfaError: USER_NOT_FOUND or ALREADY_ENABLED
        """
        user = self._find_user(user_id)
        if user.mfa_enabled:
            raise MfaError(MfaErrorKind.ALREADY_ENABLED)

        secret = totp_engine.generate_secret()
        setup = MfaSetup(
            secret=secret,
            qr_code_uri=totp_engine.totp_uri(secret, self.issuer, user.email),
            issuer=self.issuer,
            account_name=user.email,
        )

        self._audit(AuditAction.MFA_SETUP_INITIATED, user, True)
        logging.info(f"MFA setup initiated for user {user.username}")
        return setup

    def complete_setup(self, user_id: str, secret: str, code: str, now: Optional[float] = None) -> List[str]:
        """
        Finish enrollment by proving possession of the secret.

        Args:
            user_id: Authenticated user
            secret: Secret returned by initiate_setup
            code: Current TOTP code from the authenticator
            now: Verification time (default: clock)

        Returns:
            Plaintext backup codes, shown to the user once

        Raises:
            MfaError: USER_NOT_FOUND, ALREADY_ENABLED or INVALID_CODE
        """
        user = self._find_user(user_id)
        if user.mfa_enabled:
            raise MfaError(MfaErrorKind.ALREADY_ENABLED)

        if not secret or not self._verify_totp(secret, code, now):
            self._audit(AuditAction.MFA_SETUP_FAILED, user, False, reason="invalid_code")
            raise MfaError(MfaErrorKind.INVALID_CODE)

        codes, hashes = self._new_backup_codes()
        enrolled_at = self.clock() if now is None else now
        if not self.directory.enable_mfa(user.id, secret, hashes, at=enrolled_at):
            # Another request enabled MFA between our read and write
            self._audit(AuditAction.MFA_SETUP_FAILED, user, False, reason="already_enabled")
            raise MfaError(MfaErrorKind.ALREADY_ENABLED)

        self._audit(AuditAction.MFA_ENABLED, user, True, backup_codes=len(codes))
        logging.info(f"MFA enabled for user {user.username}")
        return codes

    def verify_login_code(self, user_id: str, code: str, now: Optional[float] = None) -> MfaLoginResult:
        """
        Check a TOTP code during login and issue a full session.

        Raises:
            MfaError: USER_NOT_FOUND, NOT_ENABLED or INVALID_CODE
        """
        user = self._find_user(user_id)
        self._require_enabled(user, AuditAction.MFA_VERIFY_FAILED)

        if not self._verify_totp(user.mfa_secret, code, now):
            self._audit(AuditAction.MFA_VERIFY_FAILED, user, False, reason="invalid_code")
            logging.warning(f"Invalid TOTP code for user {user.username}")
            raise MfaError(MfaErrorKind.INVALID_CODE)

        self._audit(AuditAction.MFA_VERIFY_SUCCESS, user, True)
        return MfaLoginResult(
            token=self.session_tokens.issue_session(user.username, user.roles),
            username=user.username,
            roles=user.roles,
        )

    def verify_login_backup_code(self, user_id: str, code: str) -> MfaLoginResult:
        """
        Spend a backup code during login and issue a full session.

        The matched hash is removed atomically; if two requests race on the
        same code only one of them succeeds.

        Returns:
            MfaLoginResult with the number of codes left

        Raises:
            MfaError: USER_NOT_FOUND, NOT_ENABLED or INVALID_CODE
        """
        user = self._find_user(user_id)
        self._require_enabled(user, AuditAction.MFA_BACKUP_CODE_FAILED)

        remaining = None
        if totp_engine.verify_backup_code(code, user.mfa_backup_codes or []):
            remaining = self.directory.consume_backup_code_hash(user.id, totp_engine.hash_backup_code(code))

        if remaining is None:
            self._audit(AuditAction.MFA_BACKUP_CODE_FAILED, user, False, reason="invalid_code")
            logging.warning(f"Invalid backup code for user {user.username}")
            raise MfaError(MfaErrorKind.INVALID_CODE, "Invalid backup code")

        self._audit(AuditAction.MFA_BACKUP_CODE_USED, user, True, remaining_backup_codes=remaining)
        return MfaLoginResult(
            token=self.session_tokens.issue_session(user.username, user.roles),
            username=user.username,
            roles=user.roles,
            backup_code_used=True,
            remaining_backup_codes=remaining,
        )

    def disable(self, user_id: str, code: str, now: Optional[float] = None) -> None:
        """
        Turn MFA off after a valid TOTP or backup code.

        Raises:
            MfaError: USER_NOT_FOUND, NOT_ENABLED or INVALID_CODE
        """
        user = self._find_user(user_id)
        if not user.mfa_enabled:
            self._audit(AuditAction.MFA_DISABLE_FAILED, user, False, reason="not_enabled")
            raise MfaError(MfaErrorKind.NOT_ENABLED)

        valid = bool(user.mfa_secret) and self._verify_totp(user.mfa_secret, code, now)
        if not valid:
            valid = totp_engine.verify_backup_code(code, user.mfa_backup_codes or [])

        if not valid:
            self._audit(AuditAction.MFA_DISABLE_FAILED, user, False, reason="invalid_code")
            raise MfaError(MfaErrorKind.INVALID_CODE)

        if not self.directory.disable_mfa(user.id):
            # Disabled by a concurrent request
            self._audit(AuditAction.MFA_DISABLE_FAILED, user, False, reason="not_enabled")
            raise MfaError(MfaErrorKind.NOT_ENABLED)

        self._audit(AuditAction.MFA_DISABLED, user, True)
        logging.info(f"MFA disabled for user {user.username}")

    def regenerate_backup_codes(self, user_id: str, code: str, now: Optional[float] = None) -> List[str]:
        """
        Replace all backup codes after a valid TOTP code.

        Returns:
            New plaintext backup codes

        Raises:
            MfaError: USER_NOT_FOUND, NOT_ENABLED or INVALID_CODE
        """
        user = self._find_user(user_id)
        self._require_enabled(user, AuditAction.MFA_BACKUP_REGEN_FAILED)

        if not self._verify_totp(user.mfa_secret, code, now):
            self._audit(AuditAction.MFA_BACKUP_REGEN_FAILED, user, False, reason="invalid_code")
            raise MfaError(MfaErrorKind.INVALID_CODE)

        codes, hashes = self._new_backup_codes()
        if not self.directory.replace_backup_codes(user.id, hashes):
            self._audit(AuditAction.MFA_BACKUP_REGEN_FAILED, user, False, reason="not_enabled")
            raise MfaError(MfaErrorKind.NOT_ENABLED)

        self._audit(AuditAction.MFA_BACKUP_CODES_REGENERATED, user, True, backup_codes=len(codes))
        return codes

    def status(self, user_id: str) -> MfaStatus:
        """Enrollment state for the settings page."""
        user = self._find_user(user_id)
        remaining = None
        if user.mfa_enabled:
            remaining = len(user.mfa_backup_codes or [])
        return MfaStatus(
            mfa_enabled=user.mfa_enabled,
            mfa_enabled_at=user.mfa_enabled_at,
            backup_codes_remaining=remaining,
        )
