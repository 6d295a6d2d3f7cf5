"""
Ecotrack - Rate Limiting Tests

Run with: pytest tests/test_rate_limit.py -v
"""

from datetime import timedelta

import pytest

from ecotrack.errors import RateLimitedError
from ecotrack.gateway.rate_limit import FixedWindowRateLimiter
from tests.conftest import ALICE_EMAIL, FixedClock, login_user, register_user


# =============================================================================
# LIMITER UNIT TESTS
# =============================================================================

class TestFixedWindowRateLimiter:

    def test_allows_up_to_limit(self):
        limiter = FixedWindowRateLimiter(3, timedelta(hours=1), clock=FixedClock())

        for _ in range(3):
            limiter.hit("register:1.2.3.4")

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.hit("register:1.2.3.4")
        assert exc_info.value.retry_after == 3600

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(1, timedelta(hours=1), clock=FixedClock())

        limiter.hit("login:1.2.3.4")
        limiter.hit("login:5.6.7.8")

        with pytest.raises(RateLimitedError):
            limiter.hit("login:1.2.3.4")

    def test_window_resets(self):
        clock = FixedClock()
        limiter = FixedWindowRateLimiter(1, timedelta(minutes=15), clock=clock)
        limiter.hit("login:1.2.3.4")
        clock.advance(minutes=15)

        limiter.hit("login:1.2.3.4")

    def test_retry_after_counts_down(self):
        clock = FixedClock()
        limiter = FixedWindowRateLimiter(1, timedelta(minutes=15), clock=clock)
        limiter.hit("login:1.2.3.4")
        clock.advance(minutes=10)

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.hit("login:1.2.3.4")
        assert exc_info.value.retry_after == 300

    def test_custom_message(self):
        limiter = FixedWindowRateLimiter(1, timedelta(hours=1), message="Slow down", clock=FixedClock())
        limiter.hit("k")

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.hit("k")
        assert exc_info.value.message == "Slow down"

    def test_cleanup_drops_expired_windows(self):
        clock = FixedClock()
        limiter = FixedWindowRateLimiter(5, timedelta(minutes=1), clock=clock)
        limiter.hit("a")
        clock.advance(seconds=30)
        limiter.hit("b")
        clock.advance(seconds=30)

        assert limiter.cleanup() == 1


# =============================================================================
# ENDPOINT LIMIT TESTS
# =============================================================================

class TestEndpointLimits:

    def test_register_limited_per_client(self, client):
        """The fourth registration attempt within an hour is refused."""
        for _ in range(3):
            assert register_user(client, password="weak").status_code == 400

        response = register_user(client)

        assert response.status_code == 429
        assert response.json()["error"] == "rate_limited"
        assert response.headers["Retry-After"] == "3600"

    def test_forwarded_header_ignored_by_default(self, client):
        """Rotating X-Forwarded-For does not buy extra attempts."""
        for n in range(3):
            client.post(
                "/api/v1/auth/register",
                json={"email": ALICE_EMAIL, "password": "weak", "first_name": "A", "last_name": "G"},
                headers={"X-Forwarded-For": f"203.0.113.{n}"},
            )

        response = client.post(
            "/api/v1/auth/register",
            json={"email": ALICE_EMAIL, "password": "weak", "first_name": "A", "last_name": "G"},
            headers={"X-Forwarded-For": "203.0.113.99"},
        )

        assert response.status_code == 429

    def test_limit_is_per_forwarded_ip_behind_trusted_proxy(self, client):
        client.app.state.trust_proxy_headers = True
        for _ in range(3):
            client.post(
                "/api/v1/auth/register",
                json={"email": ALICE_EMAIL, "password": "weak", "first_name": "A", "last_name": "G"},
                headers={"X-Forwarded-For": "203.0.113.7"},
            )

        response = register_user(client)

        assert response.status_code == 201

    def test_login_limit(self, client, alice):
        for _ in range(10):
            assert login_user(client, ALICE_EMAIL, "Wr0ng!Pass").status_code == 401

        response = login_user(client, ALICE_EMAIL, "Wr0ng!Pass")

        assert response.status_code == 429
        assert response.json()["message"] == "Too many login attempts. Please wait before trying again."
