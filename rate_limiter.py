"""
Rate Limiter for Authentication Endpoints

Redis-backed sliding-window limits applied per client IP and endpoint to
slow down:
- Authorization code guessing at /oauth2/token
- Credential stuffing at /auth/login
- TOTP brute force at /mfa/verify and /mfa/backup
"""

import logging
import secrets
import time
from typing import Dict, Optional, Tuple

import redis
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config import ServerConfig


class RedisRateLimiter:
    """Sliding-window limiter for a single endpoint."""

    def __init__(self, redis_client: redis.Redis, requests_per_minute: int, window_size: int = 60, clock=time.time):
        """
        Initialize rate limiter.

        Args:
            redis_client: Redis client instance
            requests_per_minute: Maximum requests allowed per window
            window_size: Time window in seconds (default 60)
            clock: Time source
        """
        self.redis_client = redis_client
        self.requests_per_minute = requests_per_minute
        self.window_size = window_size
        self.clock = clock

        # Sorted set of request timestamps; members are unique so two
        # requests in the same instant are both counted
        self.rate_limit_script = self.redis_client.register_script("""
            local key = KEYS[1]
            local limit = tonumber(ARGV[1])
            local window = tonumber(ARGV[2])
            local now = tonumber(ARGV[3])
            local member = ARGV[4]

            redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

            local count = redis.call('ZCARD', key)
            if count < limit then
                redis.call('ZADD', key, now, member)
                redis.call('EXPIRE', key, window)
                return {1, limit - count - 1}
            end
            return {0, 0}
        """)

        logging.info(f"Rate limiter initialized: {requests_per_minute} requests per {window_size}s")

    @staticmethod
    def get_client_ip(request: Request) -> str:
        """
        Client IP, honoring the first X-Forwarded-For hop.

        Args:
            request: Starlette Request object

        Returns:
            Client IP address string
        """
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def check(self, client_ip: str, endpoint_name: str) -> Tuple[bool, int]:
        """
        Count one request against the limit.

        Args:
            client_ip: Caller address
            endpoint_name: Endpoint bucket

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        key = f"rate_limit:{endpoint_name}:{client_ip}"
        now = self.clock()
        try:
            result = self.rate_limit_script(
                keys=[key],
                args=[self.requests_per_minute, self.window_size, repr(float(now)), f"{now}:{secrets.token_hex(4)}"]
            )
        except redis.RedisError as e:
            # Fail open: a Redis outage must not lock every user out
            logging.error(f"Rate limit check failed: {e}, allowing request")
            return True, self.requests_per_minute

        allowed = bool(result[0])
        remaining = int(result[1])
        if not allowed:
            logging.warning(
                f"Rate limit exceeded for {client_ip} on {endpoint_name}: "
                f"{self.requests_per_minute} requests/{self.window_size}s"
            )
        return allowed, remaining

    def check_rate_limit(self, request: Request, endpoint_name: str) -> Tuple[bool, int]:
        """Same as check(), taking the caller address from the request."""
        return self.check(self.get_client_ip(request), endpoint_name)

    def create_rate_limit_response(self, retry_after: Optional[int] = None) -> JSONResponse:
        """
        429 Too Many Requests response.

        Args:
            retry_after: Seconds until client can retry (default: window size)
        """
        retry_after = retry_after or self.window_size
        return JSONResponse(
            status_code=429,
            content={
                "error": "too_many_requests",
                "error_description": f"Rate limit exceeded. Please retry after {retry_after} seconds."
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(self.requests_per_minute),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(self.clock()) + retry_after)
            }
        )

    def apply_headers(self, response: Response, remaining: int) -> Response:
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(self.clock()) + self.window_size)
        return response


def rate_limits_from_config(config: ServerConfig) -> Dict[str, int]:
    """Requests per minute for each limited endpoint."""
    return {
        "authorize": config.rate_limit_authorize_per_minute,
        "token": config.rate_limit_token_per_minute,
        "login": config.rate_limit_login_per_minute,
        "mfa_verify": config.rate_limit_mfa_per_minute,
        "mfa_backup": config.rate_limit_mfa_per_minute,
    }


def create_rate_limiters(redis_client: redis.Redis, config: ServerConfig, clock=time.time) -> Dict[str, RedisRateLimiter]:
    """
    Build one limiter per endpoint.

    Returns:
        Endpoint name -> limiter; empty when rate limiting is disabled
    """
    if not config.rate_limit_enabled:
        logging.info("Rate limiting disabled")
        return {}

    return {
        endpoint: RedisRateLimiter(redis_client, requests_per_minute=limit, window_size=60, clock=clock)
        for endpoint, limit in rate_limits_from_config(config).items()
        if limit > 0
    }
