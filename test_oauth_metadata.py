"""
Tests for discovery documents and the WWW-Authenticate challenge.
"""

from dataclasses import replace

import pytest

from oauth_metadata import SUPPORTED_SCOPES, OAuthMetadataProvider


@pytest.fixture
def provider(config, signer):
    return OAuthMetadataProvider(config, signer)


class TestOpenIdConfiguration:

    def test_endpoints(self, provider):
        doc = provider.get_openid_configuration()
        assert doc["issuer"] == "http://auth.test"
        assert doc["authorization_endpoint"] == "http://auth.test/oauth2/authorize"
        assert doc["token_endpoint"] == "http://auth.test/oauth2/token"
        assert doc["userinfo_endpoint"] == "http://auth.test/oauth2/userinfo"
        assert doc["jwks_uri"] == "http://auth.test/.well-known/jwks.json"
        assert doc["registration_endpoint"] == "http://auth.test/oauth2/register"

    def test_capabilities(self, provider):
        doc = provider.get_openid_configuration()
        assert doc["response_types_supported"] == ["code"]
        assert doc["grant_types_supported"] == ["authorization_code"]
        assert doc["code_challenge_methods_supported"] == ["S256", "plain"]
        assert doc["scopes_supported"] == SUPPORTED_SCOPES
        assert doc["id_token_signing_alg_values_supported"] == ["HS256"]
        assert "none" in doc["token_endpoint_auth_methods_supported"]

    def test_issuer_trailing_slash_and_path(self, config, signer):
        provider = OAuthMetadataProvider(replace(config, issuer="https://idp.example/auth/"), signer)
        doc = provider.get_openid_configuration()
        assert doc["issuer"] == "https://idp.example/auth"
        assert doc["token_endpoint"] == "https://idp.example/auth/oauth2/token"


class TestAuthorizationServerMetadata:

    def test_oidc_only_fields_removed(self, provider):
        doc = provider.get_authorization_server_metadata()
        assert "userinfo_endpoint" not in doc
        assert "claims_supported" not in doc
        assert doc["token_endpoint"] == "http://auth.test/oauth2/token"

    def test_does_not_mutate_oidc_document(self, provider):
        provider.get_authorization_server_metadata()
        assert "userinfo_endpoint" in provider.get_openid_configuration()


class TestChallenge:

    def test_bare(self, provider):
        assert provider.generate_www_authenticate_header() == 'Bearer realm="http://auth.test"'

    def test_with_error(self, provider):
        header = provider.generate_www_authenticate_header("invalid_token", "Token expired")
        assert header == 'Bearer realm="http://auth.test", error="invalid_token", error_description="Token expired"'

    def test_jwks(self, provider, signer):
        assert provider.get_jwks() == signer.jwks()
