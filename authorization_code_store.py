"""
Authorization Code Store

Lifecycle and at-most-once redemption of OAuth 2.0 authorization codes in
Redis.

Each code is a Redis hash at oauth:code:{code}. Redemption is a single Lua
script that flips used 0 -> 1 only while the code is unexpired, so two
concurrent token requests for the same code cannot both succeed, even when
they are served by different processes.
"""

import logging
import math
import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import redis

from client_registry import OAuth2Client


@dataclass
class AuthorizeRequest:
    """Parameters of an /oauth2/authorize request."""
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizeRequest":
        return cls(**data)

    @classmethod
    def from_query(cls, params) -> "AuthorizeRequest":
        """Build from a query-parameter mapping."""
        return cls(
            response_type=params.get("response_type"),
            client_id=params.get("client_id"),
            redirect_uri=params.get("redirect_uri"),
            scope=params.get("scope"),
            state=params.get("state"),
            code_challenge=params.get("code_challenge"),
            code_challenge_method=params.get("code_challenge_method"),
            nonce=params.get("nonce"),
        )


@dataclass
class AuthorizationCode:
    """Authorization code record."""
    code: str
    client_id: str
    user_id: str
    username: str
    redirect_uri: str
    scope: str
    code_challenge: Optional[str]
    code_challenge_method: Optional[str]
    nonce: Optional[str]
    issued_at: int
    expires_at: int
    used: bool = False
    used_at: Optional[float] = None

    def to_hash(self) -> Dict[str, str]:
        """Flatten into Redis hash fields (None becomes "")."""
        return {
            "code": self.code,
            "client_id": self.client_id,
            "user_id": self.user_id,
            "username": self.username,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "code_challenge": self.code_challenge or "",
            "code_challenge_method": self.code_challenge_method or "",
            "nonce": self.nonce or "",
            "issued_at": str(self.issued_at),
            "expires_at": str(self.expires_at),
            "used": "1" if self.used else "0",
            "used_at": "" if self.used_at is None else str(self.used_at),
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "AuthorizationCode":
        return cls(
            code=data["code"],
            client_id=data["client_id"],
            user_id=data["user_id"],
            username=data["username"],
            redirect_uri=data["redirect_uri"],
            scope=data.get("scope", ""),
            code_challenge=data.get("code_challenge") or None,
            code_challenge_method=data.get("code_challenge_method") or None,
            nonce=data.get("nonce") or None,
            issued_at=int(data["issued_at"]),
            expires_at=int(data["expires_at"]),
            used=data.get("used") == "1",
            used_at=float(data["used_at"]) if data.get("used_at") else None,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class AuthorizationCodeStore:
    """
    Redis-backed authorization code storage.

    Keys:
    - oauth:code:{code}            hash with the AuthorizationCode fields
    - oauth:code_expiry            sorted set of codes scored by expires_at
    - oauth:client_codes:{client}  set of codes issued to a client
    """

    CODE_PREFIX = "oauth:code:"
    EXPIRY_INDEX = "oauth:code_expiry"
    CLIENT_CODES_PREFIX = "oauth:client_codes:"

    CODE_LIFETIME = 600  # 10 minutes
    # Used/expired rows linger briefly so a replay still finds a used row
    RETENTION = 300

    def __init__(self, redis_client: redis.Redis, code_lifetime: int = CODE_LIFETIME, clock=time.time):
        """
        Initialize the code store.

        Args:
            redis_client: Redis client created with decode_responses=True
            code_lifetime: Seconds from issuance until a code expires
            clock: Returns the current Unix time
        """
        self.redis_client = redis_client
        self.code_lifetime = code_lifetime
        self.clock = clock

        # Mark used only when unused and unexpired, return the row as it was
        self.redeem_script = self.redis_client.register_script("""
            local key = KEYS[1]
            local now = tonumber(ARGV[1])
            if redis.call('EXISTS', key) == 0 then
                return nil
            end
            local used = redis.call('HGET', key, 'used')
            local expires_at = tonumber(redis.call('HGET', key, 'expires_at'))
            if used ~= '0' or expires_at == nil or expires_at <= now then
                return nil
            end
            local row = redis.call('HGETALL', key)
            redis.call('HSET', key, 'used', '1', 'used_at', ARGV[1])
            return row
        """)

    def _key(self, code: str) -> str:
        return f"{self.CODE_PREFIX}{code}"

    @staticmethod
    def generate_code() -> str:
        """32 random bytes, base64url without padding."""
        return secrets.token_urlsafe(32)

    def create(
        self,
        client: OAuth2Client,
        request: AuthorizeRequest,
        user_id: str,
        username: str,
        now: Optional[float] = None
    ) -> AuthorizationCode:
        """
        Issue and store a fresh authorization code.

        Args:
            client: Validated client
            request: Validated authorize request
            user_id: Authenticated user id
            username: Authenticated username
            now: Issuance time (default: clock)

        Returns:
            The stored AuthorizationCode
        """
        if now is None:
            now = self.clock()
        issued_at = int(now)
        challenge = request.code_challenge or None
        method = None
        if challenge:
            # A challenge without a method is "plain" (RFC 7636 Section 4.3)
            method = request.code_challenge_method or "plain"

        auth_code = AuthorizationCode(
            code=self.generate_code(),
            client_id=client.client_id,
            user_id=user_id,
            username=username,
            redirect_uri=request.redirect_uri,
            scope=request.scope or "",
            code_challenge=challenge,
            code_challenge_method=method,
            nonce=request.nonce or None,
            issued_at=issued_at,
            # Rounded up so a code never lives less than the full lifetime
            expires_at=math.ceil(now + self.code_lifetime),
        )

        key = self._key(auth_code.code)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(key, mapping=auth_code.to_hash())
        pipe.expire(key, self.code_lifetime + self.RETENTION)
        pipe.zadd(self.EXPIRY_INDEX, {auth_code.code: auth_code.expires_at})
        pipe.sadd(f"{self.CLIENT_CODES_PREFIX}{client.client_id}", auth_code.code)
        pipe.execute()

        logging.debug(f"Stored authorization code: {auth_code.code[:10]}... for client {client.client_id}")
        return auth_code

    def redeem(self, code: str, now: Optional[float] = None) -> Optional[AuthorizationCode]:
        """
        Atomically consume an authorization code.

        Args:
            code: Code presented at the token endpoint
            now: Redemption time (default: clock)

        Returns:
            The code as it was before redemption, or None if it does not
            exist, has expired or was already used
        """
        if not code:
            return None
        if now is None:
            now = self.clock()

        row = self.redeem_script(keys=[self._key(code)], args=[repr(float(now))])
        if not row:
            logging.warning(f"Authorization code redemption refused: {code[:10]}...")
            return None

        fields = dict(zip(row[0::2], row[1::2]))
        logging.debug(f"Redeemed authorization code: {code[:10]}...")
        return AuthorizationCode.from_hash(fields)

    def get(self, code: str) -> Optional[AuthorizationCode]:
        """Read a code without changing it."""
        data = self.redis_client.hgetall(self._key(code))
        if not data:
            return None
        return AuthorizationCode.from_hash(data)

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """
        Delete codes whose expiry has passed.

        Redemption already refuses expired codes; this only bounds storage.

        Args:
            now: Cutoff time (default: clock)

        Returns:
            Number of codes removed from the expiry index
        """
        if now is None:
            now = self.clock()

        expired: List[str] = self.redis_client.zrangebyscore(self.EXPIRY_INDEX, "-inf", now)
        if not expired:
            return 0

        pipe = self.redis_client.pipeline(transaction=False)
        for code in expired:
            pipe.hget(self._key(code), "client_id")
        client_ids = pipe.execute()

        pipe = self.redis_client.pipeline(transaction=True)
        for code, client_id in zip(expired, client_ids):
            pipe.delete(self._key(code))
            if client_id:
                pipe.srem(f"{self.CLIENT_CODES_PREFIX}{client_id}", code)
        pipe.zrem(self.EXPIRY_INDEX, *expired)
        pipe.execute()

        logging.info(f"Swept {len(expired)} expired authorization codes")
        return len(expired)

    def revoke_for_client(self, client_id: str) -> int:
        """
        Delete every code issued to a client.

        Args:
            client_id: Client being deleted

        Returns:
            Number of codes revoked
        """
        set_key = f"{self.CLIENT_CODES_PREFIX}{client_id}"
        codes = self.redis_client.smembers(set_key)

        pipe = self.redis_client.pipeline(transaction=True)
        for code in codes:
            pipe.delete(self._key(code))
        if codes:
            pipe.zrem(self.EXPIRY_INDEX, *codes)
        pipe.delete(set_key)
        pipe.execute()

        if codes:
            logging.info(f"Revoked {len(codes)} authorization codes for client {client_id}")
        return len(codes)
