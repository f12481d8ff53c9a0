"""
OAuth 2.0 / OpenID Connect Authorization Server

HTTP surface for the authorization code flow with PKCE and the TOTP
multi-factor subsystem that gates session issuance.

ENDPOINTS
=========

OAuth 2.0 / OIDC:
- GET  /oauth2/authorize                   Authorization endpoint
- GET  /oauth2/authorize/resume            Resume after login
- POST /oauth2/token                       Token endpoint (form or JSON, HTTP Basic allowed)
- GET  /oauth2/userinfo                    UserInfo (Bearer access token)
- POST /oauth2/register                    Dynamic client registration
- GET  /.well-known/openid-configuration   Discovery document
- GET  /.well-known/oauth-authorization-server
- GET  /.well-known/jwks.json              Signing keys

Login and MFA:
- POST /auth/login                         Password step
- POST /mfa/setup, /mfa/setup/verify       Enrollment
- POST /mfa/verify, /mfa/backup            Second factor (accepts MFA-pending sessions)
- POST /mfa/disable, /mfa/backup-codes     Require a full session
- GET  /mfa/status

- GET  /health                             Redis ping

CALLER IDENTITY
===============

Session credentials come from "Authorization: Bearer <token>" or the
"session" cookie set by /auth/login and the MFA verification endpoints.

RUNNING
=======

    python server.py
    uvicorn server:create_app --factory

Configuration is read from the environment, see config.ServerConfig.from_env().
"""

import asyncio
import base64
import binascii
import contextlib
import json
import logging
import sys
import uuid
from datetime import datetime
from functools import wraps
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, unquote, urlencode

import redis
import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from audit_logger import AuditLogger, request_id_var, source_ip_var, user_agent_var
from authorization_code_store import AuthorizationCodeStore, AuthorizeRequest
from authorization_service import AuthorizationService, build_error_redirect, build_success_redirect
from client_registry import ClientRegistrationError, ClientRegistry, OAuth2Client
from config import ServerConfig
from jwt_signer import JwtSigner
from login_service import LoginError, LoginService
from mfa_service import MfaService
from oauth_errors import MfaError, OAuthError
from oauth_metadata import OAuthMetadataProvider
from rate_limiter import RedisRateLimiter, create_rate_limiters
from session_tokens import SessionClaims, SessionTokenService
from token_encryption import build_secret_encryption
from token_service import NO_CACHE_HEADERS, TokenRequest, TokenService
from user_directory import UserDirectory, UserRecord

SESSION_COOKIE = "session"
RESUME_PATH = "/oauth2/authorize/resume"

REGISTRATION_LISTS = ("redirect_uris", "grant_types", "response_types", "contacts")
REGISTRATION_STRINGS = ("client_name", "description", "scope", "token_endpoint_auth_method")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process. Audit events have their own handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )


def create_redis_client(redis_url: str) -> redis.Redis:
    """Redis client shared by every service."""
    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True
    )
    logging.info(f"Redis client created for {redis_url.split('@')[-1]}")
    return client


class RequestContextMiddleware:
    """Stores request metadata in contextvars for audit events and echoes X-Request-ID."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_token = request_id_var.set(request_id)
        ip_token = source_ip_var.set(RedisRateLimiter.get_client_ip(request))
        agent_token = user_agent_var.set(request.headers.get("User-Agent"))

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message = dict(message, headers=headers)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(request_token)
            source_ip_var.reset(ip_token)
            user_agent_var.reset(agent_token)


def _append_query(url: str, params) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def parse_basic_auth(header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Client credentials from an HTTP Basic Authorization header.

    Both parts are form-urlencoded before base64 encoding (RFC 6749 Section 2.3.1).

    Returns:
        Tuple of (client_id, client_secret), (None, None) if absent or malformed
    """
    if not header or not header.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logging.debug("Malformed Basic Authorization header")
        return None, None
    client_id, separator, client_secret = decoded.partition(":")
    if not separator:
        return None, None
    return unquote(client_id.replace("+", " ")), unquote(client_secret.replace("+", " "))


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _parse_flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"{name} must be a boolean")


def _check_param_types(
    params: Dict[str, Any],
    lists: Tuple[str, ...],
    flags: Tuple[str, ...],
    strings: Optional[Tuple[str, ...]]
) -> Dict[str, Any]:
    checked = {}
    for name, value in params.items():
        if value is None:
            continue
        if name in lists:
            if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValueError(f"{name} must be an array of strings")
        elif name in flags:
            value = _parse_flag(name, value)
        elif not isinstance(value, str):
            if strings is not None and name not in strings:
                # Metadata this server does not use
                continue
            raise ValueError(f"{name} must be a string")
        checked[name] = value
    return checked


async def read_params(
    request: Request,
    lists: Tuple[str, ...] = (),
    flags: Tuple[str, ...] = (),
    strings: Optional[Tuple[str, ...]] = None
) -> Dict[str, Any]:
    """
    Request body as a flat dict, from JSON or application/x-www-form-urlencoded.

    Fields named in lists must be arrays of strings and fields named in flags
    booleans ("true"/"false" in form bodies). Every other field must be a
    string, unless strings is given: then only those fields are checked and
    other non-string values are dropped. JSON null counts as absent.

    Args:
        request: Incoming request
        lists: Array-valued fields
        flags: Boolean fields
        strings: Fields that must be strings (default: all remaining fields)

    Raises:
        ValueError: If the body is malformed or a field has the wrong type
    """
    body = await request.body()
    if not body:
        return {}
    content_type = request.headers.get("Content-Type", "")
    try:
        if "application/json" in content_type:
            params = json.loads(body)
        else:
            params = dict(parse_qsl(body.decode("utf-8")))
    except ValueError:
        raise ValueError("Malformed request body")
    if not isinstance(params, dict):
        raise ValueError("Request body must be a JSON object")
    return _check_param_types(params, lists, flags, strings)


def _invalid_body(message: str = "Malformed request body") -> JSONResponse:
    return JSONResponse({"success": False, "error": "invalid_request", "message": message}, status_code=400)


def _unauthenticated() -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": "unauthorized", "message": "Authentication required"},
        status_code=401
    )


def create_app(config: Optional[ServerConfig] = None, redis_client: Optional[redis.Redis] = None) -> Starlette:
    """
    Build the Starlette application and every service behind it.

    Args:
        config: Server configuration (default: from environment)
        redis_client: Redis client (default: created from config.redis_url)

    Returns:
        Starlette app
    """
    if config is None:
        config = ServerConfig.from_env()
    if redis_client is None:
        redis_client = create_redis_client(config.redis_url)

    audit = AuditLogger.from_config(config, redis_client)
    signer = JwtSigner(config)
    session_tokens = SessionTokenService(signer, config)
    code_store = AuthorizationCodeStore(redis_client, code_lifetime=config.authorization_code_lifetime)
    registry = ClientRegistry(
        redis_client,
        code_store=code_store,
        audit=audit,
        access_token_ttl=config.access_token_lifetime,
        refresh_token_ttl=config.refresh_token_lifetime
    )
    directory = UserDirectory(redis_client, encryption=build_secret_encryption(config.mfa_encryption_key))
    authorization = AuthorizationService(
        registry, code_store, audit, redis_client,
        pending_request_lifetime=config.pending_request_lifetime
    )
    tokens = TokenService(registry, code_store, signer, audit, config)
    logins = LoginService(directory, session_tokens, audit)
    mfa = MfaService(directory, session_tokens, audit, config)
    metadata = OAuthMetadataProvider(config, signer)
    rate_limiters = create_rate_limiters(redis_client, config)

    # ===== Helpers bound to this app's services =====

    def rate_limited(endpoint_name: str):
        """Apply the endpoint's rate limiter, if one is configured."""
        def decorator(handler):
            @wraps(handler)
            async def wrapper(request: Request):
                limiter = rate_limiters.get(endpoint_name)
                if limiter is None:
                    return await handler(request)
                allowed, remaining = limiter.check_rate_limit(request, endpoint_name)
                if not allowed:
                    return limiter.create_rate_limit_response()
                response = await handler(request)
                return limiter.apply_headers(response, remaining)
            return wrapper
        return decorator

    def session_claims(request: Request) -> Optional[SessionClaims]:
        return session_tokens.decode(bearer_token(request) or request.cookies.get(SESSION_COOKIE))

    def current_user(request: Request, allow_pending: bool = False) -> Optional[UserRecord]:
        """User behind the session credential, or None if unauthenticated."""
        claims = session_claims(request)
        if claims is None or (claims.mfa_pending and not allow_pending):
            return None
        user = directory.get_by_username(claims.subject)
        if user is None or not user.enabled:
            return None
        return user

    def set_session_cookie(response: Response, token: str, max_age: int) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            token,
            max_age=max_age,
            httponly=True,
            secure=config.session_cookie_secure,
            samesite="lax"
        )

    def resume_url(request_id: str) -> str:
        return _append_query(RESUME_PATH, [("request_id", request_id)])

    def login_redirect(request_id: str) -> RedirectResponse:
        return RedirectResponse(_append_query(config.login_url, [("request_id", request_id)]), status_code=302)

    def authorize_error_response(error: OAuthError, auth_request: AuthorizeRequest) -> Response:
        # Only errors raised after redirect_uri was validated may be redirected
        if error.redirectable and auth_request.redirect_uri:
            location = build_error_redirect(
                auth_request.redirect_uri, error.error, error.error_description, auth_request.state
            )
            return RedirectResponse(location, status_code=302)
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    def complete_authorization(request: Request, client: OAuth2Client, auth_request: AuthorizeRequest) -> Response:
        claims = session_claims(request)
        if claims is None or claims.mfa_pending:
            request_id = authorization.suspend(auth_request)
            logging.info(f"No completed session for client {client.client_id}, redirecting to login")
            return login_redirect(request_id)

        user = directory.get_by_username(claims.subject)
        try:
            if user is None or not user.enabled:
                raise authorization.deny(auth_request, "User account is not available")
            auth_code = authorization.issue_code(client, auth_request, user.id, user.username)
        except OAuthError as e:
            return authorize_error_response(e, auth_request)

        location = build_success_redirect(auth_request.redirect_uri, auth_code.code, auth_request.state)
        return RedirectResponse(location, status_code=302)

    # ===== OAuth 2.0 / OIDC =====

    @rate_limited("authorize")
    async def handle_authorize(request: Request):
        """GET /oauth2/authorize"""
        auth_request = AuthorizeRequest.from_query(request.query_params)
        try:
            client = authorization.validate_request(auth_request)
        except OAuthError as e:
            return authorize_error_response(e, auth_request)
        return complete_authorization(request, client, auth_request)

    @rate_limited("authorize")
    async def handle_authorize_resume(request: Request):
        """GET /oauth2/authorize/resume - continue a suspended request after login"""
        request_id = request.query_params.get("request_id")
        claims = session_claims(request)
        if claims is None or claims.mfa_pending:
            if not request_id:
                return JSONResponse(OAuthError.invalid_request("Missing request_id parameter").to_dict(), status_code=400)
            # The suspended request stays stored until a completed session resumes it
            return login_redirect(request_id)

        auth_request = authorization.resume(request_id)
        if auth_request is None:
            error = OAuthError.invalid_request("Authorization request not found or expired")
            return JSONResponse(error.to_dict(), status_code=error.status_code)

        try:
            client = authorization.validate_request(auth_request)
        except OAuthError as e:
            return authorize_error_response(e, auth_request)
        return complete_authorization(request, client, auth_request)

    @rate_limited("token")
    async def handle_token(request: Request):
        """POST /oauth2/token"""
        basic_id, basic_secret = parse_basic_auth(request.headers.get("Authorization"))
        try:
            try:
                params = await read_params(request)
            except ValueError as e:
                raise OAuthError.invalid_request(str(e))
            token_request = TokenRequest.from_params(params, basic_id, basic_secret)
            # Client authentication runs bcrypt
            result = await run_in_threadpool(tokens.exchange, token_request)
        except OAuthError as e:
            headers = dict(NO_CACHE_HEADERS)
            if e.status_code == 401 and basic_id is not None:
                headers["WWW-Authenticate"] = f'Basic realm="{config.issuer_url}"'
            return JSONResponse(e.to_dict(), status_code=e.status_code, headers=headers)

        return JSONResponse(result.to_dict(), headers=NO_CACHE_HEADERS)

    async def handle_userinfo(request: Request):
        """GET /oauth2/userinfo"""
        try:
            claims = tokens.decode_access_token(bearer_token(request))
            user = directory.get(claims["sub"])
            if user is None or not user.enabled:
                raise OAuthError.invalid_token("User not found")
        except OAuthError as e:
            return JSONResponse(
                e.to_dict(),
                status_code=401,
                headers={"WWW-Authenticate": metadata.generate_www_authenticate_header(e.error, e.error_description)}
            )

        body = {
            "sub": user.id,
            "preferred_username": user.username,
            "email": user.email,
            "email_verified": True,
        }
        if user.created_at:
            body["updated_at"] = int(datetime.fromisoformat(user.created_at).timestamp())
        return JSONResponse(body)

    async def handle_register(request: Request):
        """POST /oauth2/register - dynamic client registration (RFC 7591)"""
        try:
            params = await read_params(
                request, lists=REGISTRATION_LISTS, flags=("require_pkce",), strings=REGISTRATION_STRINGS
            )
        except ValueError as e:
            return JSONResponse(OAuthError.invalid_client_metadata(str(e)).to_dict(), status_code=400)

        auth_method = params.get("token_endpoint_auth_method", "none")
        redirect_uris = params.get("redirect_uris")
        scope = params.get("scope")
        try:
            if not isinstance(redirect_uris, list) or not redirect_uris:
                raise ClientRegistrationError("redirect_uris must be a non-empty list")
            client, client_secret = await run_in_threadpool(
                registry.register,
                client_name=params.get("client_name") or "Unnamed client",
                redirect_uris=redirect_uris,
                confidential=auth_method != "none",
                description=params.get("description"),
                allowed_scopes=scope.split() if scope else None,
                allowed_grant_types=params.get("grant_types"),
                require_pkce=True if auth_method == "none" else params.get("require_pkce", True),
            )
        except ClientRegistrationError as e:
            error = OAuthError.invalid_client_metadata(str(e))
            return JSONResponse(error.to_dict(), status_code=error.status_code)

        body = {
            "client_id": client.client_id,
            "client_id_issued_at": client.created_at,
            "client_name": client.client_name,
            "redirect_uris": client.redirect_uris,
            "grant_types": client.allowed_grant_types,
            "response_types": ["code"],
            "scope": " ".join(client.allowed_scopes),
            "token_endpoint_auth_method": auth_method if client.confidential else "none",
        }
        if client_secret is not None:
            body["client_secret"] = client_secret
            body["client_secret_expires_at"] = 0
        return JSONResponse(body, status_code=201, headers=NO_CACHE_HEADERS)

    async def handle_openid_configuration(request: Request):
        return JSONResponse(metadata.get_openid_configuration())

    async def handle_authorization_server_metadata(request: Request):
        return JSONResponse(metadata.get_authorization_server_metadata())

    async def handle_jwks(request: Request):
        return JSONResponse(metadata.get_jwks())

    # ===== Login and MFA =====

    @rate_limited("login")
    async def handle_login(request: Request):
        """POST /auth/login"""
        try:
            params = await read_params(request)
        except ValueError as e:
            return _invalid_body(str(e))

        try:
            # bcrypt password check
            result = await run_in_threadpool(logins.login, params.get("username"), params.get("password"))
        except LoginError as e:
            return JSONResponse(e.to_dict(), status_code=401)

        body = result.to_dict()
        request_id = params.get("request_id")
        if request_id and not result.mfa_required:
            body["resume_url"] = resume_url(request_id)

        response = JSONResponse(body)
        lifetime = config.mfa_pending_token_lifetime if result.mfa_required else config.session_token_lifetime
        set_session_cookie(response, result.token, lifetime)
        return response

    async def mfa_params(request: Request, allow_pending: bool = False):
        """Caller and body for an MFA endpoint, or an error response."""
        user = current_user(request, allow_pending=allow_pending)
        if user is None:
            return None, None, _unauthenticated()
        try:
            params = await read_params(request)
        except ValueError as e:
            return None, None, _invalid_body(str(e))
        return user, params, None

    async def handle_mfa_setup(request: Request):
        """POST /mfa/setup"""
        user = current_user(request)
        if user is None:
            return _unauthenticated()
        try:
            setup = mfa.initiate_setup(user.id)
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return JSONResponse(setup.to_dict())

    async def handle_mfa_setup_verify(request: Request):
        """POST /mfa/setup/verify"""
        user, params, error = await mfa_params(request)
        if error:
            return error
        try:
            codes = mfa.complete_setup(user.id, params.get("secret"), params.get("code"))
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return JSONResponse({
            "success": True,
            "message": "MFA has been enabled. Store these backup codes in a safe place.",
            "backupCodes": codes,
        })

    async def second_factor_response(result, params) -> JSONResponse:
        body = result.to_dict()
        request_id = params.get("request_id")
        if request_id:
            body["resume_url"] = resume_url(request_id)
        response = JSONResponse(body)
        set_session_cookie(response, result.token, config.session_token_lifetime)
        return response

    @rate_limited("mfa_verify")
    async def handle_mfa_verify(request: Request):
        """POST /mfa/verify - TOTP code; promotes a pending session"""
        user, params, error = await mfa_params(request, allow_pending=True)
        if error:
            return error
        try:
            result = mfa.verify_login_code(user.id, params.get("code"))
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return await second_factor_response(result, params)

    @rate_limited("mfa_backup")
    async def handle_mfa_backup(request: Request):
        """POST /mfa/backup - backup code; promotes a pending session"""
        user, params, error = await mfa_params(request, allow_pending=True)
        if error:
            return error
        code = params.get("backupCode") or params.get("code")
        try:
            result = mfa.verify_login_backup_code(user.id, code)
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return await second_factor_response(result, params)

    async def handle_mfa_disable(request: Request):
        """POST /mfa/disable"""
        user, params, error = await mfa_params(request)
        if error:
            return error
        try:
            mfa.disable(user.id, params.get("code"))
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return JSONResponse({"success": True, "message": "MFA has been disabled"})

    async def handle_mfa_backup_codes(request: Request):
        """POST /mfa/backup-codes - regenerate"""
        user, params, error = await mfa_params(request)
        if error:
            return error
        try:
            codes = mfa.regenerate_backup_codes(user.id, params.get("code"))
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return JSONResponse({
            "success": True,
            "message": "New backup codes generated. Previous codes are no longer valid.",
            "backupCodes": codes,
        })

    async def handle_mfa_status(request: Request):
        """GET /mfa/status"""
        user = current_user(request)
        if user is None:
            return _unauthenticated()
        try:
            status = mfa.status(user.id)
        except MfaError as e:
            return JSONResponse(e.to_dict(), status_code=e.status_code)
        return JSONResponse(status.to_dict())

    async def handle_health(request: Request):
        try:
            redis_client.ping()
        except redis.RedisError as e:
            logging.error(f"Health check failed: {e}")
            return JSONResponse({"status": "unavailable", "redis": "down"}, status_code=503)
        return JSONResponse({"status": "ok", "redis": "up"})

    async def handle_redis_error(request: Request, exc: redis.RedisError):
        logging.error(f"Store error on {request.url.path}: {exc}")
        error = OAuthError.server_error("The authorization server is temporarily unable to handle the request")
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    # ===== Lifecycle =====

    async def sweep_codes_forever(interval: int):
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await asyncio.to_thread(code_store.sweep_expired)
                if removed:
                    logging.info(f"Swept {removed} expired authorization codes")
            except redis.RedisError as e:
                logging.error(f"Authorization code sweep failed: {e}")

    @contextlib.asynccontextmanager
    async def lifespan(app):
        if config.seed_default_clients:
            try:
                registry.seed_default_clients(config.default_confidential_client_secret)
            except redis.RedisError as e:
                logging.error(f"Failed to seed default clients: {e}")

        sweeper = None
        if config.code_sweep_interval > 0:
            sweeper = asyncio.create_task(sweep_codes_forever(config.code_sweep_interval))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    routes = [
        Route("/health", handle_health, methods=["GET"]),
        Route("/oauth2/authorize", handle_authorize, methods=["GET"]),
        Route(RESUME_PATH, handle_authorize_resume, methods=["GET"]),
        Route("/oauth2/token", handle_token, methods=["POST"]),
        Route("/oauth2/userinfo", handle_userinfo, methods=["GET"]),
        Route("/oauth2/register", handle_register, methods=["POST"]),
        Route("/.well-known/openid-configuration", handle_openid_configuration, methods=["GET"]),
        Route("/.well-known/oauth-authorization-server", handle_authorization_server_metadata, methods=["GET"]),
        Route("/.well-known/jwks.json", handle_jwks, methods=["GET"]),
        Route("/auth/login", handle_login, methods=["POST"]),
        Route("/mfa/setup", handle_mfa_setup, methods=["POST"]),
        Route("/mfa/setup/verify", handle_mfa_setup_verify, methods=["POST"]),
        Route("/mfa/verify", handle_mfa_verify, methods=["POST"]),
        Route("/mfa/backup", handle_mfa_backup, methods=["POST"]),
        Route("/mfa/disable", handle_mfa_disable, methods=["POST"]),
        Route("/mfa/backup-codes", handle_mfa_backup_codes, methods=["POST"]),
        Route("/mfa/status", handle_mfa_status, methods=["GET"]),
    ]

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={redis.RedisError: handle_redis_error}
    )
    app.add_middleware(RequestContextMiddleware)

    # Exposed for tests and operational scripts
    app.state.config = config
    app.state.redis = redis_client
    app.state.registry = registry
    app.state.directory = directory
    app.state.code_store = code_store
    app.state.audit = audit

    logging.info(f"Authorization server initialized (issuer={config.issuer_url})")
    return app


def main():
    config = ServerConfig.from_env()
    configure_logging(config.log_level)
    logging.info(f"Starting authorization server on {config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
