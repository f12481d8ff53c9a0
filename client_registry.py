"""
OAuth 2.0 Client Registry

Registered clients and their policy: redirect URIs, scopes, grant types,
PKCE requirement and token lifetimes. Clients are stored as JSON documents
in Redis. Confidential client secrets are kept only as bcrypt hashes.

After registration only the enabled flag and the policy fields may change,
and only through set_enabled() and update_policy().
"""

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import bcrypt
import redis

from audit_logger import AuditAction, AuditLogger

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


class ClientRegistrationError(ValueError):
    """Client metadata rejected at registration or policy update."""


@dataclass
class OAuth2Client:
    """Registered OAuth 2.0 client."""
    client_id: str
    client_name: str
    redirect_uris: List[str]
    confidential: bool = False
    client_secret_hash: Optional[str] = field(default=None, repr=False)
    description: Optional[str] = None
    allowed_scopes: List[str] = field(default_factory=lambda: ["openid", "profile", "email"])
    allowed_grant_types: List[str] = field(
        default_factory=lambda: [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN]
    )
    require_pkce: bool = True
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 2592000
    enabled: bool = True
    created_at: int = 0
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuth2Client":
        return cls(**data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Client metadata without the secret hash."""
        data = self.to_dict()
        data.pop("client_secret_hash")
        return data

    def is_redirect_uri_allowed(self, redirect_uri: Optional[str]) -> bool:
        """Exact string match against the registered set."""
        return bool(redirect_uri) and redirect_uri in self.redirect_uris

    def are_scopes_allowed(self, scope: Optional[str]) -> bool:
        """True if every space-separated scope is allowed (an empty scope is)."""
        if not scope or not scope.strip():
            return True
        allowed = set(self.allowed_scopes)
        return all(s in allowed for s in scope.split())

    def is_grant_type_allowed(self, grant_type: str) -> bool:
        return grant_type in self.allowed_grant_types

    def verify_secret(self, client_secret: Optional[str]) -> bool:
        """
        Check a presented client secret against the stored bcrypt hash.

        Args:
            client_secret: Secret from the token request

        Returns:
            True if the client is confidential and the secret matches
        """
        if self.client_secret_hash is None or not client_secret:
            return False
        try:
            return bcrypt.checkpw(client_secret.encode('utf-8'), self.client_secret_hash.encode('utf-8'))
        except ValueError:
            logging.error(f"Malformed secret hash for client {self.client_id}")
            return False


def hash_client_secret(client_secret: str) -> str:
    return bcrypt.hashpw(client_secret.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def _validate_redirect_uris(redirect_uris: List[str]) -> None:
    if not redirect_uris:
        raise ClientRegistrationError("At least one redirect_uri is required")
    for uri in redirect_uris:
        parsed = urlparse(uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ClientRegistrationError(f"redirect_uri must be an absolute http(s) URI: {uri}")
        if parsed.fragment:
            raise ClientRegistrationError(f"redirect_uri must not contain a fragment: {uri}")


class ClientRegistry:
    """
    Redis-backed client registry.

    Keys:
    - oauth:client:{client_id}  JSON OAuth2Client
    - oauth:clients             set of registered client ids
    """

    CLIENT_PREFIX = "oauth:client:"
    CLIENT_INDEX = "oauth:clients"

    def __init__(
        self,
        redis_client: redis.Redis,
        code_store=None,
        audit: Optional[AuditLogger] = None,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 2592000,
        clock=time.time
    ):
        """
        Initialize the registry.

        Args:
            redis_client: Redis client created with decode_responses=True
            code_store: AuthorizationCodeStore used to revoke codes on delete
            audit: Audit logger for registrations, policy changes and deletions
            access_token_ttl: Access token lifetime for clients registered without one
            refresh_token_ttl: Refresh token lifetime for clients registered without one
            clock: Returns the current Unix time
        """
        self.redis_client = redis_client
        self.code_store = code_store
        self.audit = audit
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.clock = clock

    def _key(self, client_id: str) -> str:
        return f"{self.CLIENT_PREFIX}{client_id}"

    @staticmethod
    def generate_client_id() -> str:
        return f"client_{secrets.token_urlsafe(16)}"

    def _save(self, client: OAuth2Client) -> None:
        self.redis_client.set(self._key(client.client_id), json.dumps(client.to_dict()))

    def _audit(self, action: AuditAction, client_id: str, **details) -> None:
        if self.audit is not None:
            self.audit.log_event(
                action=action,
                success=True,
                resource_type="OAUTH2_CLIENT",
                resource_id=client_id,
                details=details,
            )

    def register(
        self,
        client_name: str,
        redirect_uris: List[str],
        client_id: Optional[str] = None,
        confidential: bool = False,
        client_secret: Optional[str] = None,
        description: Optional[str] = None,
        allowed_scopes: Optional[List[str]] = None,
        allowed_grant_types: Optional[List[str]] = None,
        require_pkce: bool = True,
        access_token_ttl: Optional[int] = None,
        refresh_token_ttl: Optional[int] = None
    ) -> Tuple[OAuth2Client, Optional[str]]:
        """
        Register a new client.

        Args:
            client_name: Human-readable name
            redirect_uris: Exact-match redirect URIs
            client_id: Fixed id (default: generated)
            confidential: Whether the client can keep a secret
            client_secret: Secret for a confidential client (default: generated)
            description: Free-form description
            allowed_scopes: Scopes the client may request
            allowed_grant_types: Grant types the client may use
            require_pkce: Must be True for public clients
            access_token_ttl: Access token lifetime in seconds (default: registry default)
            refresh_token_ttl: Refresh token lifetime in seconds (default: registry default)

        Returns:
            Tuple of (client, plaintext secret or None). The plaintext secret
            is not stored and cannot be recovered later.

        Raises:
            ClientRegistrationError: If the metadata is invalid or the id is taken
        """
        _validate_redirect_uris(redirect_uris)
        if not confidential and not require_pkce:
            raise ClientRegistrationError("Public clients must require PKCE")
        if access_token_ttl is None:
            access_token_ttl = self.access_token_ttl
        if refresh_token_ttl is None:
            refresh_token_ttl = self.refresh_token_ttl
        if access_token_ttl <= 0 or refresh_token_ttl <= 0:
            raise ClientRegistrationError("Token lifetimes must be positive")

        plaintext_secret = None
        secret_hash = None
        if confidential:
            plaintext_secret = client_secret or secrets.token_urlsafe(32)
            secret_hash = hash_client_secret(plaintext_secret)

        client = OAuth2Client(
            client_id=client_id or self.generate_client_id(),
            client_name=client_name,
            redirect_uris=list(redirect_uris),
            confidential=confidential,
            client_secret_hash=secret_hash,
            description=description,
            allowed_scopes=list(allowed_scopes) if allowed_scopes else ["openid", "profile", "email"],
            allowed_grant_types=list(allowed_grant_types) if allowed_grant_types
            else [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            require_pkce=require_pkce,
            access_token_ttl=access_token_ttl,
            refresh_token_ttl=refresh_token_ttl,
            enabled=True,
            created_at=int(self.clock()),
        )

        # SET NX keeps concurrent registrations of the same id from overwriting each other
        if not self.redis_client.set(self._key(client.client_id), json.dumps(client.to_dict()), nx=True):
            raise ClientRegistrationError(f"Client '{client.client_id}' is already registered")
        self.redis_client.sadd(self.CLIENT_INDEX, client.client_id)
        self._audit(
            AuditAction.OAUTH2_CLIENT_REGISTERED, client.client_id,
            client_name=client_name, confidential=confidential
        )

        logging.info(f"Registered OAuth2 client: {client.client_id} ({client_name}, confidential={confidential})")
        return client, plaintext_secret

    def get(self, client_id: Optional[str]) -> Optional[OAuth2Client]:
        """
        Look up a client.

        Args:
            client_id: Client id from the request

        Returns:
            OAuth2Client if registered
        """
        if not client_id:
            return None
        data = self.redis_client.get(self._key(client_id))
        if not data:
            logging.debug(f"Client not found: {client_id}")
            return None
        return OAuth2Client.from_dict(json.loads(data))

    def list_clients(self) -> List[OAuth2Client]:
        clients = []
        for client_id in sorted(self.redis_client.smembers(self.CLIENT_INDEX)):
            client = self.get(client_id)
            if client:
                clients.append(client)
        return clients

    def set_enabled(self, client_id: str, enabled: bool) -> Optional[OAuth2Client]:
        """Enable or disable a client. Returns the updated client, or None if unknown."""
        client = self.get(client_id)
        if client is None:
            return None
        client.enabled = enabled
        client.updated_at = int(self.clock())
        self._save(client)
        logging.info(f"Client {client_id} {'enabled' if enabled else 'disabled'}")
        self._audit(AuditAction.OAUTH2_CLIENT_UPDATED, client_id, enabled=enabled)
        return client

    def update_policy(
        self,
        client_id: str,
        redirect_uris: Optional[List[str]] = None,
        allowed_scopes: Optional[List[str]] = None,
        allowed_grant_types: Optional[List[str]] = None,
        require_pkce: Optional[bool] = None,
        access_token_ttl: Optional[int] = None,
        refresh_token_ttl: Optional[int] = None
    ) -> Optional[OAuth2Client]:
        """
        Change policy fields of a client. Fields left as None are unchanged.

        Returns:
            Updated client, or None if unknown

        Raises:
            ClientRegistrationError: If the change would break client invariants
        """
        client = self.get(client_id)
        if client is None:
            return None

        if redirect_uris is not None:
            _validate_redirect_uris(redirect_uris)
            client.redirect_uris = list(redirect_uris)
        if allowed_scopes is not None:
            client.allowed_scopes = list(allowed_scopes)
        if allowed_grant_types is not None:
            client.allowed_grant_types = list(allowed_grant_types)
        if require_pkce is not None:
            if not client.confidential and not require_pkce:
                raise ClientRegistrationError("Public clients must require PKCE")
            client.require_pkce = require_pkce
        if access_token_ttl is not None:
            client.access_token_ttl = access_token_ttl
        if refresh_token_ttl is not None:
            client.refresh_token_ttl = refresh_token_ttl

        changed = sorted(name for name, value in (
            ("redirect_uris", redirect_uris),
            ("allowed_scopes", allowed_scopes),
            ("allowed_grant_types", allowed_grant_types),
            ("require_pkce", require_pkce),
            ("access_token_ttl", access_token_ttl),
            ("refresh_token_ttl", refresh_token_ttl),
        ) if value is not None)

        client.updated_at = int(self.clock())
        self._save(client)
        logging.info(f"Updated policy for client {client_id}")
        self._audit(AuditAction.OAUTH2_CLIENT_UPDATED, client_id, changed_fields=changed)
        return client

    def delete(self, client_id: str) -> bool:
        """
        Delete a client and revoke every code issued to it.

        Returns:
            True if the client existed
        """
        revoked = 0
        if self.code_store is not None:
            revoked = self.code_store.revoke_for_client(client_id)
        deleted = self.redis_client.delete(self._key(client_id))
        self.redis_client.srem(self.CLIENT_INDEX, client_id)
        if deleted:
            logging.info(f"Deleted OAuth2 client: {client_id}")
            self._audit(AuditAction.OAUTH2_CLIENT_DELETED, client_id, revoked_codes=revoked)
        return bool(deleted)

    def seed_default_clients(self, confidential_secret: Optional[str] = None) -> List[str]:
        """
        Register the built-in development clients that are not present yet.

        Args:
            confidential_secret: Secret for "confidential-client"; the client
                is skipped when no secret is configured

        Returns:
            Ids of the clients created
        """
        created = []
        defaults = [
            dict(
                client_id="ai-security-monitor-frontend",
                client_name="AI Security Monitor Frontend",
                description="The React frontend application",
                redirect_uris=[
                    "http://localhost:5173/callback",
                    "http://localhost:5173/oauth/callback",
                    "http://localhost:3000/callback",
                    "https://ai-security-monitor.vercel.app/callback",
                    "https://ai-security-monitor.vercel.app/oauth/callback",
                ],
                refresh_token_ttl=86400 * 7,
            ),
            dict(
                client_id="test-client",
                client_name="Test Client",
                description="A test client for development",
                redirect_uris=[
                    "http://localhost:3000/callback",
                    "http://127.0.0.1:3000/callback",
                ],
                refresh_token_ttl=86400,
            ),
        ]
        if confidential_secret:
            defaults.append(dict(
                client_id="confidential-client",
                client_name="Confidential Backend Client",
                description="A confidential client for backend services",
                redirect_uris=["http://localhost:8081/callback"],
                confidential=True,
                client_secret=confidential_secret,
                allowed_scopes=["openid", "profile", "email", "admin"],
                require_pkce=False,
                refresh_token_ttl=86400 * 30,
            ))
        else:
            logging.info("DEFAULT_CONFIDENTIAL_CLIENT_SECRET not set - skipping confidential-client")

        for entry in defaults:
            if self.redis_client.exists(self._key(entry["client_id"])):
                continue
            try:
                self.register(**entry)
            except ClientRegistrationError as e:
                # Lost a race with another worker seeding the same client
                logging.debug(f"Default client {entry['client_id']} not created: {e}")
                continue
            created.append(entry["client_id"])
            logging.info(f"Created default OAuth2 client: {entry['client_id']}")

        return created
