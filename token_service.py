"""
Token Service (/oauth2/token)

Exchanges authorization codes for tokens (RFC 6749 Section 4.1.3):

1. Only the authorization_code grant is supported. refresh_token and every
   other grant get unsupported_grant_type.
2. The code is redeemed atomically. Any miss (unknown, expired, already
   used) is the same invalid_grant.
3. The code must have been issued to this client and redirect_uri.
4. If the code carries a PKCE challenge the verifier must match. Failures
   are audited as OAUTH2_PKCE_FAILED.
5. A JWT access token, an opaque refresh token and, for the openid scope,
   an ID token are minted.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
import redis

import pkce_verifier
from audit_logger import AuditAction, AuditLogger
from authorization_code_store import AuthorizationCode, AuthorizationCodeStore
from client_registry import GRANT_AUTHORIZATION_CODE, ClientRegistry, OAuth2Client
from config import ServerConfig
from jwt_signer import JwtSigner
from oauth_errors import OAuthError

ACCESS_TOKEN_TYPE = "access_token"

# Headers required on every token response (RFC 6749 Section 5.1)
NO_CACHE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass
class TokenRequest:
    """Token endpoint parameters."""
    grant_type: Optional[str]
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_params(
        cls,
        params: Dict[str, Any],
        basic_client_id: Optional[str] = None,
        basic_client_secret: Optional[str] = None
    ) -> "TokenRequest":
        """
        Build from form/JSON body parameters.

        Credentials from an HTTP Basic header are used when the body omits them.
        """
        return cls(
            grant_type=params.get("grant_type"),
            code=params.get("code"),
            redirect_uri=params.get("redirect_uri"),
            client_id=params.get("client_id") or basic_client_id,
            client_secret=params.get("client_secret") or basic_client_secret,
            code_verifier=params.get("code_verifier"),
            refresh_token=params.get("refresh_token"),
            scope=params.get("scope"),
        )


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    refresh_token: str
    scope: str
    id_token: Optional[str] = None
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }
        if self.id_token is not None:
            body["id_token"] = self.id_token
        return body


class TokenService:
    """Handles the token endpoint."""

    def __init__(
        self,
        registry: ClientRegistry,
        code_store: AuthorizationCodeStore,
        signer: JwtSigner,
        audit: AuditLogger,
        config: ServerConfig,
        clock=time.time
    ):
        self.registry = registry
        self.code_store = code_store
        self.signer = signer
        self.audit = audit
        self.issuer = config.issuer_url
        self.id_token_lifetime = config.id_token_lifetime
        self.clock = clock

    def _audit_failure(self, action: AuditAction, client_id: Optional[str], reason: str, username: Optional[str] = None):
        self.audit.log_event(
            action=action,
            success=False,
            username=username,
            resource_type="OAUTH2_CLIENT",
            resource_id=client_id,
            details={"reason": reason},
        )

    def authenticate_client(self, request: TokenRequest) -> OAuth2Client:
        """
        Identify the calling client.

        Confidential clients must present their secret (body or Basic).
        Public clients are identified by client_id alone.

        Raises:
            OAuthError: invalid_client (401) or unauthorized_client
        """
        client = self.registry.get(request.client_id)
        if client is None or not client.enabled:
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, request.client_id, "invalid_client")
            raise OAuthError.invalid_client("Client authentication failed")

        if client.confidential and not client.verify_secret(request.client_secret):
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, client.client_id, "bad_client_secret")
            logging.warning(f"Client secret mismatch for client {client.client_id}")
            raise OAuthError.invalid_client("Client authentication failed")

        if not client.is_grant_type_allowed(request.grant_type):
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, client.client_id, "grant_not_allowed")
            raise OAuthError.unauthorized_client(
                f"Client is not allowed to use grant type '{request.grant_type}'"
            )
        return client

    def exchange(self, request: TokenRequest, now: Optional[float] = None) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Args:
            request: Token request
            now: Redemption time (default: clock)

        Returns:
            TokenResponse

        Raises:
            OAuthError: On any failure; code problems are always invalid_grant
        """
        if not request.grant_type:
            raise OAuthError.invalid_request("Missing grant_type parameter")
        if request.grant_type != GRANT_AUTHORIZATION_CODE:
            raise OAuthError.unsupported_grant_type(request.grant_type)
        if not request.code:
            raise OAuthError.invalid_request("Missing code parameter")
        if not request.redirect_uri:
            raise OAuthError.invalid_request("Missing redirect_uri parameter")

        client = self.authenticate_client(request)

        if now is None:
            now = self.clock()

        try:
            auth_code = self.code_store.redeem(request.code, now)
        except redis.RedisError as e:
            logging.error(f"Authorization code redemption failed: {e}")
            raise OAuthError.server_error("Authorization server is temporarily unable to redeem codes")

        if auth_code is None:
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, client.client_id, "invalid_code")
            raise OAuthError.invalid_grant("Authorization code is invalid, expired, or has already been used")

        if auth_code.client_id != client.client_id:
            logging.warning(f"Client ID mismatch. Code issued to: {auth_code.client_id}, request from: {client.client_id}")
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, client.client_id, "client_mismatch", auth_code.username)
            raise OAuthError.invalid_grant("Authorization code was not issued to this client")

        if auth_code.redirect_uri != request.redirect_uri:
            self._audit_failure(AuditAction.OAUTH2_TOKEN_FAILED, client.client_id, "redirect_uri_mismatch", auth_code.username)
            raise OAuthError.invalid_grant("redirect_uri does not match the one used in authorization request")

        if auth_code.code_challenge is not None:
            self._verify_pkce(auth_code, request, client)

        response = self._mint(auth_code, client, int(now))

        self.audit.log_event(
            action=AuditAction.OAUTH2_TOKEN_ISSUED,
            success=True,
            username=auth_code.username,
            resource_type="OAUTH2_CLIENT",
            resource_id=client.client_id,
            details={"scope": auth_code.scope, "id_token": response.id_token is not None},
        )
        logging.info(f"Tokens issued for user {auth_code.username} to client {client.client_id}")
        return response

    def _verify_pkce(self, auth_code: AuthorizationCode, request: TokenRequest, client: OAuth2Client) -> None:
        verifier = request.code_verifier
        if not verifier:
            self._audit_failure(AuditAction.OAUTH2_PKCE_FAILED, client.client_id, "missing_verifier", auth_code.username)
            raise OAuthError.invalid_grant(
                "code_verifier is required because code_challenge was used in authorization"
            )

        valid = pkce_verifier.validate_verifier_shape(verifier) and pkce_verifier.verify_challenge(
            verifier,
            auth_code.code_challenge,
            auth_code.code_challenge_method or pkce_verifier.METHOD_PLAIN
        )
        if not valid:
            logging.warning(f"PKCE verification failed for client: {client.client_id}")
            self._audit_failure(AuditAction.OAUTH2_PKCE_FAILED, client.client_id, "verifier_mismatch", auth_code.username)
            raise OAuthError.invalid_grant("PKCE verification failed. code_verifier does not match code_challenge")

    def _mint(self, auth_code: AuthorizationCode, client: OAuth2Client, now: int) -> TokenResponse:
        access_token = self.signer.sign({
            "sub": auth_code.user_id,
            "iss": self.issuer,
            "aud": client.client_id,
            "iat": now,
            "exp": now + client.access_token_ttl,
            "jti": secrets.token_urlsafe(16),
            "username": auth_code.username,
            "scope": auth_code.scope,
            "client_id": client.client_id,
            "token_type": ACCESS_TOKEN_TYPE,
        })

        id_token = None
        if "openid" in auth_code.scope.split():
            claims = {
                "sub": auth_code.user_id,
                "iss": self.issuer,
                "aud": client.client_id,
                "iat": now,
                "exp": now + self.id_token_lifetime,
                "auth_time": auth_code.issued_at,
                "preferred_username": auth_code.username,
            }
            if auth_code.nonce:
                claims["nonce"] = auth_code.nonce
            id_token = self.signer.sign(claims)

        return TokenResponse(
            access_token=access_token,
            expires_in=client.access_token_ttl,
            refresh_token=secrets.token_urlsafe(32),
            scope=auth_code.scope,
            id_token=id_token,
        )

    def decode_access_token(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Verify an access token presented to /oauth2/userinfo.

        Returns:
            Verified claims

        Raises:
            OAuthError: invalid_token
        """
        if not token:
            raise OAuthError.invalid_token("Access token is required")
        try:
            claims = self.signer.decode(token)
        except jwt.InvalidTokenError as e:
            logging.debug(f"Rejected access token: {e}")
            raise OAuthError.invalid_token("Access token is invalid or expired")
        if claims.get("token_type") != ACCESS_TOKEN_TYPE:
            raise OAuthError.invalid_token("Not an access token")
        return claims
