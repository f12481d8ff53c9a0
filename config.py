"""
Server Configuration

All tunables for the authorization server live in one ServerConfig value that
is built once (usually from the environment) and handed to each service at
construction time.
"""

import logging
import os
import secrets
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logging.warning(f"Invalid {name} '{value}', defaulting to {default}")
        return default


@dataclass(frozen=True)
class ServerConfig:
    """Immutable server settings."""

    issuer: str = "http://localhost:8080"
    host: str = "0.0.0.0"
    port: int = 8080

    # Token signing
    jwt_secret: str = field(default="", repr=False)
    jwt_algorithm: str = "HS256"
    jwt_private_key_path: Optional[str] = None
    jwt_key_id: str = "default"

    # Lifetimes (seconds)
    access_token_lifetime: int = 3600
    refresh_token_lifetime: int = 2592000
    id_token_lifetime: int = 3600
    session_token_lifetime: int = 86400
    mfa_pending_token_lifetime: int = 300
    authorization_code_lifetime: int = 600
    pending_request_lifetime: int = 600

    # MFA
    mfa_issuer: str = "AI Security Monitor"
    mfa_encryption_key: Optional[str] = field(default=None, repr=False)
    totp_drift_steps: int = 1
    backup_code_count: int = 10

    # Login redirect for suspended /oauth2/authorize requests
    login_url: str = "/login"
    session_cookie_secure: bool = False

    redis_url: str = "redis://localhost:6379"

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_authorize_per_minute: int = 10
    rate_limit_token_per_minute: int = 20
    rate_limit_login_per_minute: int = 10
    rate_limit_mfa_per_minute: int = 5

    # Audit
    audit_log_enabled: bool = True
    audit_log_stream_maxlen: int = 10000

    seed_default_clients: bool = True
    default_confidential_client_secret: Optional[str] = field(default=None, repr=False)
    code_sweep_interval: int = 300
    log_level: str = "INFO"

    def __post_init__(self):
        if self.jwt_algorithm not in ("HS256", "RS256"):
            raise ValueError(f"Unsupported JWT_ALGORITHM '{self.jwt_algorithm}' (expected HS256 or RS256)")
        if self.jwt_algorithm == "HS256" and not self.jwt_secret:
            raise ValueError("JWT_SECRET is required when JWT_ALGORITHM is HS256")

    @property
    def issuer_url(self) -> str:
        """Issuer without a trailing slash."""
        return self.issuer.rstrip('/')

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Build configuration from environment variables.

        JWT_SECRET falls back to a random per-process value, which invalidates
        every issued token on restart, so a warning is logged.

        Returns:
            ServerConfig
        """
        algorithm = os.getenv("JWT_ALGORITHM", "HS256").upper()
        jwt_secret = os.getenv("JWT_SECRET", "")
        if algorithm == "HS256" and not jwt_secret:
            logging.warning("JWT_SECRET not set - generated an ephemeral signing secret")
            jwt_secret = secrets.token_urlsafe(48)

        return cls(
            issuer=os.getenv("OAUTH2_ISSUER", "http://localhost:8080"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8080),
            jwt_secret=jwt_secret,
            jwt_algorithm=algorithm,
            jwt_private_key_path=os.getenv("JWT_PRIVATE_KEY_PATH") or None,
            jwt_key_id=os.getenv("JWT_KEY_ID", "default"),
            access_token_lifetime=_env_int("ACCESS_TOKEN_LIFETIME", 3600),
            refresh_token_lifetime=_env_int("REFRESH_TOKEN_LIFETIME", 2592000),
            id_token_lifetime=_env_int("ID_TOKEN_LIFETIME", 3600),
            session_token_lifetime=_env_int("SESSION_TOKEN_LIFETIME", 86400),
            mfa_pending_token_lifetime=_env_int("MFA_PENDING_TOKEN_LIFETIME", 300),
            authorization_code_lifetime=_env_int("AUTHORIZATION_CODE_LIFETIME", 600),
            mfa_issuer=os.getenv("MFA_ISSUER", "AI Security Monitor"),
            mfa_encryption_key=os.getenv("MFA_ENCRYPTION_KEY") or None,
            login_url=os.getenv("LOGIN_URL", "/login"),
            session_cookie_secure=_env_bool("SESSION_COOKIE_SECURE", False),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            rate_limit_authorize_per_minute=_env_int("RATE_LIMIT_AUTHORIZE_PER_MINUTE", 10),
            rate_limit_token_per_minute=_env_int("RATE_LIMIT_TOKEN_PER_MINUTE", 20),
            rate_limit_login_per_minute=_env_int("RATE_LIMIT_LOGIN_PER_MINUTE", 10),
            rate_limit_mfa_per_minute=_env_int("RATE_LIMIT_MFA_PER_MINUTE", 5),
            audit_log_enabled=_env_bool("AUDIT_LOG_ENABLED", True),
            audit_log_stream_maxlen=_env_int("AUDIT_LOG_STREAM_MAXLEN", 10000),
            seed_default_clients=_env_bool("SEED_DEFAULT_CLIENTS", True),
            default_confidential_client_secret=os.getenv("DEFAULT_CONFIDENTIAL_CLIENT_SECRET") or None,
            code_sweep_interval=_env_int("CODE_SWEEP_INTERVAL", 300),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
