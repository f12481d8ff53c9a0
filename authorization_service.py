"""
Authorization Service (/oauth2/authorize)

Validates authorization requests against the client registry and mints
authorization codes (RFC 6749 Section 4.1.1, RFC 7636).

Per-request state machine:

    received -> validated -> (awaiting_auth | consented) -> code_issued
                                                          | error_redirect
                                                          | error_direct

Errors found before redirect_uri is trusted (response type, client,
redirect_uri, PKCE parameters) are answered directly as JSON and never
redirected. Errors after that point are redirectable.
"""

import json
import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

import redis

from audit_logger import AuditAction, AuditLogger
from authorization_code_store import AuthorizationCode, AuthorizationCodeStore, AuthorizeRequest
from client_registry import ClientRegistry, OAuth2Client
from oauth_errors import OAuthError, OAuthErrorCode
from pkce_verifier import SUPPORTED_METHODS

SUPPORTED_RESPONSE_TYPES = ("code",)


def _append_query(uri: str, params) -> str:
    separator = "&" if "?" in uri else "?"
    return f"{uri}{separator}{urlencode(params)}"


def build_success_redirect(redirect_uri: str, code: str, state: Optional[str] = None) -> str:
    """
    Redirect carrying the authorization code.

    Args:
        redirect_uri: Validated redirect URI (may already have a query string)
        code: Authorization code
        state: Client state to echo back

    Returns:
        Redirect URL
    """
    params = [("code", code)]
    if state is not None:
        params.append(("state", state))
    return _append_query(redirect_uri, params)


def build_error_redirect(
    redirect_uri: str,
    error: str,
    error_description: Optional[str] = None,
    state: Optional[str] = None
) -> str:
    """
    Redirect carrying an OAuth error. Only for an already validated redirect_uri.

    Args:
        redirect_uri: Validated redirect URI
        error: OAuth error code
        error_description: Human-readable description
        state: Client state to echo back

    Returns:
        Redirect URL
    """
    params = [("error", error)]
    if error_description is not None:
        params.append(("error_description", error_description))
    if state is not None:
        params.append(("state", state))
    return _append_query(redirect_uri, params)


class AuthorizationService:
    """Handles the authorization endpoint."""

    PENDING_PREFIX = "oauth:pending:"

    def __init__(
        self,
        registry: ClientRegistry,
        code_store: AuthorizationCodeStore,
        audit: AuditLogger,
        redis_client: redis.Redis,
        pending_request_lifetime: int = 600
    ):
        self.registry = registry
        self.code_store = code_store
        self.audit = audit
        self.redis_client = redis_client
        self.pending_request_lifetime = pending_request_lifetime

        # Single-use consumption of suspended requests
        self.atomic_get_and_delete = self.redis_client.register_script("""
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
        """)

    def _fail(self, request: AuthorizeRequest, error: OAuthError) -> OAuthError:
        self.audit.log_event(
            action=AuditAction.OAUTH2_AUTHORIZE_FAILED,
            success=False,
            resource_type="OAUTH2_CLIENT",
            resource_id=request.client_id,
            details={"error": error.error, "description": error.error_description},
        )
        logging.warning(f"Authorization request rejected for client {request.client_id}: {error.error_description}")
        return error

    def validate_request(self, request: AuthorizeRequest) -> OAuth2Client:
        """
        Validate an authorization request.

        Checks, in order: response_type, client existence and state,
        redirect_uri, scopes, PKCE presence, PKCE method.

        Args:
            request: Authorization request parameters

        Returns:
            The validated client

        Raises:
            OAuthError: With redirectable=True only for checks made after
                redirect_uri has been verified
        """
        if request.response_type not in SUPPORTED_RESPONSE_TYPES:
            raise self._fail(request, OAuthError(
                OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE,
                f"Response type '{request.response_type}' is not supported. Supported types: code"
            ))

        client = self.registry.get(request.client_id)
        if client is None:
            raise self._fail(request, OAuthError(
                OAuthErrorCode.INVALID_CLIENT, f"Client '{request.client_id}' not found", status_code=400
            ))
        if not client.enabled:
            raise self._fail(request, OAuthError(
                OAuthErrorCode.INVALID_CLIENT, f"Client '{request.client_id}' is disabled", status_code=400
            ))

        if not client.is_redirect_uri_allowed(request.redirect_uri):
            raise self._fail(request, OAuthError.invalid_request(
                "Invalid redirect_uri. The redirect URI must exactly match a registered URI."
            ))

        # redirect_uri is trusted from here on
        if not client.are_scopes_allowed(request.scope):
            raise self._fail(request, OAuthError.invalid_scope(
                "One or more requested scopes are not allowed for this client. "
                f"Allowed scopes: {' '.join(client.allowed_scopes)}"
            ))

        if client.require_pkce and not request.code_challenge:
            raise self._fail(request, OAuthError.invalid_request(
                "PKCE is required for this client. "
                "Please include code_challenge and code_challenge_method parameters."
            ))

        if request.code_challenge:
            method = request.code_challenge_method or "plain"
            if method not in SUPPORTED_METHODS:
                raise self._fail(request, OAuthError.invalid_request(
                    f"Unsupported code_challenge_method: {method}. Supported methods: S256, plain"
                ))

        logging.debug(f"Authorization request validated for client: {client.client_id}")
        return client

    def issue_code(
        self,
        client: OAuth2Client,
        request: AuthorizeRequest,
        user_id: str,
        username: str
    ) -> AuthorizationCode:
        """
        Mint an authorization code after the user has authenticated.

        Raises:
            OAuthError: server_error (redirectable) if the store is unavailable
        """
        try:
            auth_code = self.code_store.create(client, request, user_id, username)
        except redis.RedisError as e:
            logging.error(f"Failed to store authorization code for client {client.client_id}: {e}")
            raise OAuthError.server_error("Authorization server is temporarily unable to issue codes", redirectable=True)

        self.audit.log_event(
            action=AuditAction.OAUTH2_CODE_ISSUED,
            success=True,
            username=username,
            resource_type="OAUTH2_CLIENT",
            resource_id=client.client_id,
            details={"scope": request.scope or "", "pkce": auth_code.code_challenge is not None},
        )
        logging.info(f"Authorization code issued for user {username} to client {client.client_id}")
        return auth_code

    def authorize(self, request: AuthorizeRequest, user_id: str, username: str) -> str:
        """
        Validate, issue a code and build the success redirect.

        Returns:
            Redirect URL with code and state

        Raises:
            OAuthError: See validate_request() and issue_code()
        """
        client = self.validate_request(request)
        auth_code = self.issue_code(client, request, user_id, username)
        return build_success_redirect(request.redirect_uri, auth_code.code, request.state)

    def deny(self, request: AuthorizeRequest, description: str) -> OAuthError:
        """access_denied for a validated request the user may not complete."""
        return self._fail(request, OAuthError.access_denied(description))

    # ===== Suspended requests =====

    def suspend(self, request: AuthorizeRequest) -> str:
        """
        Park a validated request while the user authenticates.

        Args:
            request: Validated authorization request

        Returns:
            Opaque request id to resume with
        """
        request_id = secrets.token_urlsafe(32)
        self.redis_client.setex(
            f"{self.PENDING_PREFIX}{request_id}",
            self.pending_request_lifetime,
            json.dumps(request.to_dict())
        )
        logging.debug(f"Suspended authorization request {request_id[:10]}... for client {request.client_id}")
        return request_id

    def resume(self, request_id: Optional[str]) -> Optional[AuthorizeRequest]:
        """
        Take back a suspended request (single use).

        Returns:
            The request, or None if unknown, expired or already resumed
        """
        if not request_id:
            return None
        data = self.atomic_get_and_delete(keys=[f"{self.PENDING_PREFIX}{request_id}"])
        if not data:
            logging.warning(f"Suspended authorization request not found: {request_id[:10]}...")
            return None
        return AuthorizeRequest.from_dict(json.loads(data))
