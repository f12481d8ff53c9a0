"""
OAuth Metadata and Discovery Endpoints

Static documents clients use to locate the authorization server endpoints
and verify token signatures:
- OpenID Connect Discovery (/.well-known/openid-configuration)
- Authorization Server Metadata (RFC 8414)
- JSON Web Key Set (/.well-known/jwks.json)
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from config import ServerConfig
from jwt_signer import JwtSigner

SUPPORTED_SCOPES = ["openid", "profile", "email"]


class OAuthMetadataProvider:
    """Builds discovery documents from configuration."""

    def __init__(self, config: ServerConfig, signer: JwtSigner):
        """
        Initialize metadata provider.

        Args:
            config: Server configuration (issuer, signing algorithm)
            signer: Signer whose public keys are published
        """
        self.server_url = config.issuer_url
        self.signing_algorithm = config.jwt_algorithm
        self.signer = signer
        logging.info(f"OAuth metadata configured for issuer: {self.server_url}")

    def _endpoint(self, path: str) -> str:
        return urljoin(self.server_url + "/", path.lstrip("/"))

    def get_openid_configuration(self) -> Dict[str, Any]:
        """
        Get the OpenID Connect Discovery document.

        Returns:
            Discovery metadata dict
        """
        return {
            "issuer": self.server_url,
            "authorization_endpoint": self._endpoint("/oauth2/authorize"),
            "token_endpoint": self._endpoint("/oauth2/token"),
            "userinfo_endpoint": self._endpoint("/oauth2/userinfo"),
            "jwks_uri": self._endpoint("/.well-known/jwks.json"),
            "registration_endpoint": self._endpoint("/oauth2/register"),

            "response_types_supported": ["code"],
            "response_modes_supported": ["query"],
            "grant_types_supported": ["authorization_code"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": [self.signing_algorithm],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
            "code_challenge_methods_supported": ["S256", "plain"],
            "claims_supported": [
                "sub", "iss", "aud", "exp", "iat", "auth_time",
                "nonce", "preferred_username", "email", "email_verified"
            ],
        }

    def get_authorization_server_metadata(self) -> Dict[str, Any]:
        """RFC 8414 metadata; the OIDC document without the OIDC-only fields."""
        metadata = self.get_openid_configuration()
        for key in ("userinfo_endpoint", "subject_types_supported",
                    "id_token_signing_alg_values_supported", "claims_supported"):
            metadata.pop(key)
        return metadata

    def get_jwks(self) -> Dict[str, Any]:
        return self.signer.jwks()

    def generate_www_authenticate_header(
        self,
        error: Optional[str] = None,
        error_description: Optional[str] = None
    ) -> str:
        """
        WWW-Authenticate value for 401 responses from bearer-protected endpoints.

        Args:
            error: OAuth error code (e.g., "invalid_token")
            error_description: Human-readable error description

        Returns:
            Header value
        """
        parts = [f'Bearer realm="{self.server_url}"']
        if error:
            parts.append(f'error="{error}"')
        if error_description:
            parts.append(f'error_description="{error_description}"')
        return ", ".join(parts)
