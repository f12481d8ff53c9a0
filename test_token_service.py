"""
Tests for the token endpoint logic: code exchange, client authentication,
PKCE verification and token contents.
"""

from unittest.mock import patch

import jwt
import pytest
import redis

import pkce_verifier
from authorization_code_store import AuthorizeRequest
from conftest import TEST_JWT_SECRET, TEST_REDIRECT_URI
from oauth_errors import OAuthError
from token_service import TokenRequest, TokenService


@pytest.fixture
def service(registry, code_store, signer, audit, config, clock):
    return TokenService(registry, code_store, signer, audit, config, clock=clock)


@pytest.fixture
def verifier():
    return pkce_verifier.generate_code_verifier()


@pytest.fixture
def issue_code(code_store, public_client, verifier):
    def _issue(client=public_client, scope="openid profile", method="S256", **overrides):
        params = dict(
            response_type="code",
            client_id=client.client_id,
            redirect_uri=client.redirect_uris[0],
            scope=scope,
            state="s",
            code_challenge=pkce_verifier.compute_challenge(verifier, method) if method else None,
            code_challenge_method=method,
            nonce="nonce-123",
        )
        params.update(overrides)
        return code_store.create(client, AuthorizeRequest(**params), "42", "alice")
    return _issue


def token_request(code, verifier=None, **overrides):
    params = dict(
        grant_type="authorization_code",
        code=code,
        redirect_uri=TEST_REDIRECT_URI,
        client_id="test-spa",
        code_verifier=verifier,
    )
    params.update(overrides)
    return TokenRequest(**params)


def decode(token, audience="test-spa"):
    return jwt.decode(token, TEST_JWT_SECRET, algorithms=["HS256"], audience=audience, issuer="http://auth.test")


class TestTokenRequestParsing:

    def test_from_params(self):
        request = TokenRequest.from_params({"grant_type": "authorization_code", "code": "c", "client_id": "x"})
        assert request.grant_type == "authorization_code"
        assert request.client_id == "x"
        assert request.client_secret is None

    def test_basic_credentials_fill_gaps(self):
        request = TokenRequest.from_params({"grant_type": "authorization_code"}, "basic-id", "basic-secret")
        assert request.client_id == "basic-id"
        assert request.client_secret == "basic-secret"


class TestGrantTypes:

    def test_missing_grant_type(self, service):
        with pytest.raises(OAuthError) as exc:
            service.exchange(TokenRequest(grant_type=None))
        assert exc.value.error == "invalid_request"

    @pytest.mark.parametrize("grant_type", ["refresh_token", "password", "client_credentials", "implicit"])
    def test_other_grants_unsupported(self, service, grant_type):
        with pytest.raises(OAuthError) as exc:
            service.exchange(TokenRequest(grant_type=grant_type, refresh_token="r", client_id="test-spa"))
        assert exc.value.error == "unsupported_grant_type"
        assert exc.value.status_code == 400

    def test_missing_code(self, service, public_client):
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(None))
        assert exc.value.error == "invalid_request"

    def test_client_without_authorization_code_grant(self, service, registry, code_store):
        client, _ = registry.register(
            "Limited", ["https://limited.example/cb"], client_id="limited",
            allowed_grant_types=["refresh_token"]
        )
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request("whatever", client_id="limited", redirect_uri="https://limited.example/cb"))
        assert exc.value.error == "unauthorized_client"


class TestExchange:

    def test_successful_exchange(self, service, issue_code, verifier, clock):
        auth_code = issue_code()
        response = service.exchange(token_request(auth_code.code, verifier))
        body = response.to_dict()

        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "openid profile"
        assert body["refresh_token"]
        assert body["access_token"]
        assert body["id_token"]

        access = decode(body["access_token"])
        assert access["sub"] == "42"
        assert access["username"] == "alice"
        assert access["client_id"] == "test-spa"
        assert access["token_type"] == "access_token"
        assert access["exp"] - access["iat"] == 3600
        assert access["jti"]

        id_token = decode(body["id_token"])
        assert id_token["sub"] == "42"
        assert id_token["nonce"] == "nonce-123"
        assert id_token["preferred_username"] == "alice"
        assert id_token["auth_time"] == auth_code.issued_at

    def test_no_id_token_without_openid(self, service, issue_code, verifier):
        auth_code = issue_code(scope="profile")
        body = service.exchange(token_request(auth_code.code, verifier)).to_dict()
        assert "id_token" not in body

    def test_empty_scope_grants_nothing(self, service, issue_code, verifier):
        auth_code = issue_code(scope=None)
        body = service.exchange(token_request(auth_code.code, verifier)).to_dict()
        assert body["scope"] == ""
        assert "id_token" not in body

    def test_client_access_token_ttl(self, service, registry, issue_code, verifier, public_client):
        registry.update_policy(public_client.client_id, access_token_ttl=120)
        auth_code = issue_code()
        body = service.exchange(token_request(auth_code.code, verifier)).to_dict()
        assert body["expires_in"] == 120

    def test_second_exchange_is_invalid_grant(self, service, issue_code, verifier):
        auth_code = issue_code()
        service.exchange(token_request(auth_code.code, verifier))
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, verifier))
        assert exc.value.error == "invalid_grant"
        assert exc.value.status_code == 400

    def test_expired_code(self, service, issue_code, verifier, clock):
        auth_code = issue_code()
        clock.advance(601)
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, verifier))
        assert exc.value.error == "invalid_grant"

    def test_code_bound_to_client(self, service, registry, issue_code, verifier):
        registry.register("Other", [TEST_REDIRECT_URI], client_id="other")
        auth_code = issue_code()
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, verifier, client_id="other"))
        assert exc.value.error == "invalid_grant"

    def test_code_bound_to_redirect_uri(self, service, issue_code, verifier):
        auth_code = issue_code()
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(
                auth_code.code, verifier, redirect_uri="http://localhost:3000/cb?tenant=acme"
            ))
        assert exc.value.error == "invalid_grant"

    def test_store_failure_is_server_error(self, service, code_store, public_client):
        with patch.object(code_store, "redeem", side_effect=redis.ConnectionError("down")):
            with pytest.raises(OAuthError) as exc:
                service.exchange(token_request("abc", "v" * 43))
        assert exc.value.error == "server_error"
        assert exc.value.status_code == 500


class TestPkce:

    def test_missing_verifier(self, service, issue_code, audit):
        auth_code = issue_code()
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, None))
        assert exc.value.error == "invalid_grant"
        assert audit.recent_events(1)[0]["action"] == "OAUTH2_PKCE_FAILED"

    def test_wrong_verifier(self, service, issue_code, audit):
        auth_code = issue_code()
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, pkce_verifier.generate_code_verifier()))
        assert exc.value.error == "invalid_grant"
        assert audit.recent_events(1)[0]["action"] == "OAUTH2_PKCE_FAILED"

    def test_malformed_verifier(self, service, issue_code):
        auth_code = issue_code(method="plain", code_challenge="short")
        with pytest.raises(OAuthError):
            service.exchange(token_request(auth_code.code, "short"))

    def test_plain_method(self, service, issue_code, verifier):
        auth_code = issue_code(method="plain")
        assert service.exchange(token_request(auth_code.code, verifier)).access_token

    def test_failed_pkce_still_consumes_code(self, service, issue_code, verifier):
        auth_code = issue_code()
        with pytest.raises(OAuthError):
            service.exchange(token_request(auth_code.code, pkce_verifier.generate_code_verifier()))
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, verifier))
        assert exc.value.error == "invalid_grant"


class TestConfidentialClients:

    @pytest.fixture
    def backend(self, registry):
        client, _ = registry.register(
            "Backend", ["https://api.example/cb"], client_id="backend",
            confidential=True, client_secret="backend-secret", require_pkce=False
        )
        return client

    def test_secret_required(self, service, issue_code, backend):
        auth_code = issue_code(client=backend, method=None)
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, client_id="backend", redirect_uri="https://api.example/cb"))
        assert exc.value.error == "invalid_client"
        assert exc.value.status_code == 401

    def test_wrong_secret(self, service, issue_code, backend):
        auth_code = issue_code(client=backend, method=None)
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(
                auth_code.code, client_id="backend", client_secret="nope", redirect_uri="https://api.example/cb"
            ))
        assert exc.value.error == "invalid_client"

    def test_correct_secret_without_pkce(self, service, issue_code, backend):
        auth_code = issue_code(client=backend, method=None)
        response = service.exchange(token_request(
            auth_code.code, client_id="backend", client_secret="backend-secret", redirect_uri="https://api.example/cb"
        ))
        assert decode(response.access_token, audience="backend")["client_id"] == "backend"

    def test_unknown_client(self, service):
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request("abc", client_id="ghost"))
        assert exc.value.error == "invalid_client"
        assert exc.value.status_code == 401

    def test_disabled_client(self, service, registry, issue_code, verifier, public_client):
        auth_code = issue_code()
        registry.set_enabled(public_client.client_id, False)
        with pytest.raises(OAuthError) as exc:
            service.exchange(token_request(auth_code.code, verifier))
        assert exc.value.error == "invalid_client"


class TestDecodeAccessToken:

    def test_round_trip(self, service, issue_code, verifier):
        auth_code = issue_code()
        response = service.exchange(token_request(auth_code.code, verifier))
        assert service.decode_access_token(response.access_token)["sub"] == "42"

    def test_id_token_is_not_an_access_token(self, service, issue_code, verifier):
        auth_code = issue_code()
        response = service.exchange(token_request(auth_code.code, verifier))
        with pytest.raises(OAuthError) as exc:
            service.decode_access_token(response.id_token)
        assert exc.value.error == "invalid_token"

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    def test_invalid(self, service, token):
        with pytest.raises(OAuthError) as exc:
            service.decode_access_token(token)
        assert exc.value.status_code == 401
