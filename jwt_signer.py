"""
JWT Signing and JWKS

Signs and verifies every JWT the server issues (access tokens, ID tokens and
session credentials) with PyJWT. HS256 uses the shared JWT_SECRET; RS256 uses
a PEM private key from JWT_PRIVATE_KEY_PATH or a key generated at startup.
"""

import json
import logging
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from config import ServerConfig


class JwtSigner:
    """Signs and verifies JWTs with the configured key."""

    def __init__(self, config: ServerConfig):
        """
        Load the signing key.

        Args:
            config: Server configuration

        Raises:
            ValueError: If the RS256 key file cannot be loaded
        """
        self.algorithm = config.jwt_algorithm
        self.key_id = config.jwt_key_id
        self.issuer = config.issuer_url

        if self.algorithm == "RS256":
            self._private_key = self._load_rsa_key(config.jwt_private_key_path)
            self._verify_key = self._private_key.public_key()
        else:
            self._private_key = config.jwt_secret
            self._verify_key = config.jwt_secret

        logging.info(f"JWT signer initialized ({self.algorithm}, kid={self.key_id})")

    @staticmethod
    def _load_rsa_key(path: Optional[str]):
        if not path:
            logging.warning("JWT_PRIVATE_KEY_PATH not set - generated an ephemeral RSA signing key")
            return rsa.generate_private_key(public_exponent=65537, key_size=2048)
        try:
            with open(path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
        except (OSError, ValueError, TypeError) as e:
            raise ValueError(f"Failed to load RS256 private key from {path}: {e}")
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError(f"Key at {path} is not an RSA private key")
        return key

    def sign(self, claims: Dict[str, Any]) -> str:
        """Sign a claim set, adding the key id to the header."""
        return jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers={"kid": self.key_id})

    def decode(self, token: str, audience: Optional[str] = None, require=("exp", "iat", "sub")) -> Dict[str, Any]:
        """
        Verify a token issued by this server.

        Args:
            token: Compact JWT
            audience: Expected aud claim, or None to skip the audience check
            require: Claims that must be present

        Returns:
            Verified claims

        Raises:
            jwt.InvalidTokenError: If the signature, issuer, expiry or
                required claims do not check out
        """
        options = {"require": list(require)}
        if audience is None:
            options["verify_aud"] = False
        return jwt.decode(
            token,
            self._verify_key,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            audience=audience,
            options=options,
        )

    def jwks(self) -> Dict[str, Any]:
        """
        Public key set for /.well-known/jwks.json.

        Shared HS256 secrets are never published; the entry only advertises
        the key id and algorithm.
        """
        if self.algorithm == "RS256":
            jwk = json.loads(RSAAlgorithm.to_jwk(self._verify_key))
            jwk.update({"kid": self.key_id, "use": "sig", "alg": "RS256"})
            return {"keys": [jwk]}

        return {"keys": [{"kty": "oct", "kid": self.key_id, "use": "sig", "alg": "HS256"}]}
