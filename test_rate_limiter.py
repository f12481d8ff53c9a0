"""
Tests for the sliding-window rate limiter.
"""

import json
from dataclasses import replace
from unittest.mock import Mock, patch

import pytest
import redis
from starlette.responses import JSONResponse

from rate_limiter import RedisRateLimiter, create_rate_limiters, rate_limits_from_config


@pytest.fixture
def limiter(redis_client, clock):
    return RedisRateLimiter(redis_client, requests_per_minute=3, window_size=60, clock=clock)


class TestCheck:

    def test_allows_up_to_limit(self, limiter):
        results = [limiter.check("10.0.0.1", "token") for _ in range(4)]
        assert results == [(True, 2), (True, 1), (True, 0), (False, 0)]

    def test_same_instant_requests_all_counted(self, limiter, clock):
        # Clock does not move between calls
        for _ in range(3):
            assert limiter.check("10.0.0.1", "login")[0]
        assert not limiter.check("10.0.0.1", "login")[0]

    def test_window_slides(self, limiter, clock):
        for _ in range(3):
            limiter.check("10.0.0.1", "token")
        assert not limiter.check("10.0.0.1", "token")[0]

        clock.advance(61)
        assert limiter.check("10.0.0.1", "token") == (True, 2)

    def test_buckets_are_per_ip_and_endpoint(self, limiter):
        for _ in range(3):
            limiter.check("10.0.0.1", "token")
        assert limiter.check("10.0.0.2", "token")[0]
        assert limiter.check("10.0.0.1", "login")[0]

    def test_key_expires(self, limiter, redis_client):
        limiter.check("10.0.0.1", "token")
        assert 0 < redis_client.ttl("rate_limit:token:10.0.0.1") <= 60

    def test_redis_failure_fails_open(self, limiter):
        with patch.object(limiter, "rate_limit_script", side_effect=redis.ConnectionError("down")):
            assert limiter.check("10.0.0.1", "token") == (True, 3)


class TestClientIp:

    def test_forwarded_for_first_hop(self):
        request = Mock()
        request.headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        assert RedisRateLimiter.get_client_ip(request) == "203.0.113.7"

    def test_peer_address(self):
        request = Mock()
        request.headers = {}
        request.client.host = "198.51.100.4"
        assert RedisRateLimiter.get_client_ip(request) == "198.51.100.4"

    def test_unknown(self):
        request = Mock()
        request.headers = {}
        request.client = None
        assert RedisRateLimiter.get_client_ip(request) == "unknown"


class TestResponses:

    def test_429_response(self, limiter, clock):
        response = limiter.create_rate_limit_response()
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == str(int(clock.now) + 60)
        assert json.loads(response.body)["error"] == "too_many_requests"

    def test_apply_headers(self, limiter):
        response = limiter.apply_headers(JSONResponse({}), 2)
        assert response.headers["X-RateLimit-Remaining"] == "2"
        assert response.headers["X-RateLimit-Limit"] == "3"


class TestFactory:

    def test_disabled(self, redis_client, config):
        assert create_rate_limiters(redis_client, config) == {}

    def test_enabled(self, redis_client, config):
        limiters = create_rate_limiters(redis_client, replace(config, rate_limit_enabled=True))
        assert set(limiters) == set(rate_limits_from_config(config))
        assert limiters["mfa_verify"].requests_per_minute == 5
        assert limiters["token"].requests_per_minute == 20

    def test_zero_limit_skipped(self, redis_client, config):
        limiters = create_rate_limiters(
            redis_client, replace(config, rate_limit_enabled=True, rate_limit_login_per_minute=0)
        )
        assert "login" not in limiters
