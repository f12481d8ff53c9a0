"""
OAuth 2.0 and MFA Error Taxonomy

Error vocabulary from RFC 6749 Section 4.1.2.1 and 5.2, plus the MFA error
kinds used by the login path. Every error that leaves a service carries a
tagged OAuthErrorResponse so handlers never build ad-hoc JSON bodies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class OAuthErrorCode(Enum):
    """OAuth 2.0 error codes."""
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    INVALID_TOKEN = "invalid_token"
    INVALID_CLIENT_METADATA = "invalid_client_metadata"


# Default HTTP status per error code
_STATUS_CODES = {
    OAuthErrorCode.INVALID_REQUEST: 400,
    OAuthErrorCode.INVALID_CLIENT: 401,
    OAuthErrorCode.INVALID_GRANT: 400,
    OAuthErrorCode.UNAUTHORIZED_CLIENT: 403,
    OAuthErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
    OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE: 400,
    OAuthErrorCode.INVALID_SCOPE: 400,
    OAuthErrorCode.ACCESS_DENIED: 403,
    OAuthErrorCode.SERVER_ERROR: 500,
    OAuthErrorCode.TEMPORARILY_UNAVAILABLE: 503,
    OAuthErrorCode.INVALID_TOKEN: 401,
    OAuthErrorCode.INVALID_CLIENT_METADATA: 400,
}


@dataclass(frozen=True)
class OAuthErrorResponse:
    """Error body returned to OAuth clients."""
    error: OAuthErrorCode
    error_description: Optional[str] = None
    error_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error.value}
        if self.error_description is not None:
            body["error_description"] = self.error_description
        if self.error_uri is not None:
            body["error_uri"] = self.error_uri
        return body


class OAuthError(Exception):
    """
    OAuth protocol error raised by the authorization and token services.

    Attributes:
        response: Tagged error body
        status_code: HTTP status used when answered directly
        redirectable: True once redirect_uri has been validated, meaning the
            error may be delivered to the client by redirect instead of JSON
    """

    def __init__(
        self,
        error: OAuthErrorCode,
        error_description: Optional[str] = None,
        status_code: Optional[int] = None,
        redirectable: bool = False,
        error_uri: Optional[str] = None
    ):
        self.response = OAuthErrorResponse(error, error_description, error_uri)
        self.status_code = status_code or _STATUS_CODES[error]
        self.redirectable = redirectable
        super().__init__(f"{error.value}: {error_description}")

    @property
    def error(self) -> str:
        return self.response.error.value

    @property
    def error_description(self) -> Optional[str]:
        return self.response.error_description

    def to_dict(self) -> Dict[str, Any]:
        return self.response.to_dict()

    # Constructors for the common cases

    @classmethod
    def invalid_request(cls, description: str, redirectable: bool = False) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_REQUEST, description, redirectable=redirectable)

    @classmethod
    def invalid_client(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_CLIENT, description)

    @classmethod
    def invalid_grant(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_GRANT, description)

    @classmethod
    def unauthorized_client(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.UNAUTHORIZED_CLIENT, description)

    @classmethod
    def unsupported_grant_type(cls, grant_type: Optional[str]) -> "OAuthError":
        return cls(
            OAuthErrorCode.UNSUPPORTED_GRANT_TYPE,
            f"Grant type '{grant_type}' is not supported"
        )

    @classmethod
    def invalid_scope(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_SCOPE, description, redirectable=True)

    @classmethod
    def access_denied(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.ACCESS_DENIED, description, redirectable=True)

    @classmethod
    def server_error(cls, description: str, redirectable: bool = False) -> "OAuthError":
        return cls(OAuthErrorCode.SERVER_ERROR, description, redirectable=redirectable)

    @classmethod
    def invalid_token(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_TOKEN, description)

    @classmethod
    def invalid_client_metadata(cls, description: str) -> "OAuthError":
        return cls(OAuthErrorCode.INVALID_CLIENT_METADATA, description)


class MfaErrorKind(Enum):
    """Reasons an MFA operation can fail."""
    ALREADY_ENABLED = "already_enabled"
    NOT_ENABLED = "not_enabled"
    INVALID_CODE = "invalid_code"
    USER_NOT_FOUND = "user_not_found"


_MFA_MESSAGES = {
    MfaErrorKind.ALREADY_ENABLED: "MFA is already enabled for this account",
    MfaErrorKind.NOT_ENABLED: "MFA is not enabled for this account",
    MfaErrorKind.INVALID_CODE: "Invalid verification code",
    MfaErrorKind.USER_NOT_FOUND: "User not found",
}


class MfaError(Exception):
    """MFA lifecycle error raised by the MFA service."""

    def __init__(self, kind: MfaErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.message = message or _MFA_MESSAGES[kind]
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        # Wrong codes are authentication failures, the rest are bad requests
        if self.kind == MfaErrorKind.INVALID_CODE:
            return 401
        return 400

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.kind.value, "message": self.message}
