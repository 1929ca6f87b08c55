"""Tests for the fixed window rate limiter and admission middleware."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.datastructures import Headers

from gatekeeper.app.middleware.rate_limit import (
    AdmissionDecision,
    FixedWindowRateLimiter,
    RateLimitMiddleware,
    UNKNOWN_IDENTIFIER,
    rate_limit_headers,
    resolve_client_identifier,
)


class TestFixedWindowRateLimiter:
    """Tests for the in-memory fixed window limiter."""

    @pytest.fixture
    def limiter(self, clock):
        return FixedWindowRateLimiter(clock=clock)

    def test_defaults(self):
        limiter = FixedWindowRateLimiter()
        assert limiter.requests_per_window == 60
        assert limiter.window_seconds == 60

    def test_first_sixty_allowed_with_decreasing_remaining(self, limiter):
        """Test the first 60 calls are admitted and remaining counts 59 down to 0."""
        remaining = []
        for _ in range(60):
            decision = limiter.check("203.0.113.5")
            assert decision.allowed is True
            remaining.append(decision.remaining)

        assert remaining == list(range(59, -1, -1))

    def test_sixty_first_denied(self, limiter):
        for _ in range(60):
            limiter.check("203.0.113.5")

        decision = limiter.check("203.0.113.5")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.limit == 60

    def test_denied_requests_keep_counting(self, limiter):
        """Test denied checks still consume a slot until the window rolls over."""
        for _ in range(65):
            limiter.check("client")

        assert limiter.get_entry("client").count == 65

    def test_reset_at_identical_within_window(self, limiter, clock):
        first = limiter.check("client")
        clock.advance(30)
        second = limiter.check("client")
        clock.advance(29.5)
        third = limiter.check("client")

        assert first.reset_at == second.reset_at == third.reset_at
        assert first.reset_at == clock.now - 59.5 + 60

    def test_window_resets_after_reset_at(self, limiter, clock):
        """Test the next call after reset_at starts a fresh window with count 1."""
        for _ in range(61):
            limiter.check("client")
        old = limiter.get_entry("client")

        clock.advance(60.001)
        decision = limiter.check("client")

        assert decision.allowed is True
        assert decision.remaining == 59
        assert decision.reset_at == pytest.approx(clock.now + 60)
        assert limiter.get_entry("client").count == 1
        assert decision.reset_at > old.reset_at

    def test_window_still_active_exactly_at_reset_at(self, limiter, clock):
        """Test the window only expires once the clock is strictly past reset_at."""
        limiter.check("client")
        clock.advance(60)

        limiter.check("client")
        assert limiter.get_entry("client").count == 2

    def test_boundary_burst_allows_double_quota(self, clock):
        """Test fixed windows let a full quota through on each side of a boundary."""
        limiter = FixedWindowRateLimiter(requests_per_window=5, window_seconds=10, clock=clock)

        clock.advance(9.9)
        limiter.check("client")  # opens the window at t=9.9
        clock.advance(9.9)
        late = [limiter.check("client").allowed for _ in range(4)]
        clock.advance(0.2)
        early = [limiter.check("client").allowed for _ in range(5)]

        assert all(late) and all(early)

    def test_different_identifiers_independent(self, limiter):
        for _ in range(61):
            limiter.check("noisy")

        assert limiter.check("noisy").allowed is False
        decision = limiter.check("quiet")
        assert decision.allowed is True
        assert decision.remaining == 59

    def test_entries_created_lazily_and_never_removed(self, limiter, clock):
        assert len(limiter) == 0
        assert "a" not in limiter

        limiter.check("a")
        limiter.check("b")
        clock.advance(3600)
        limiter.check("a")

        assert len(limiter) == 2
        assert "b" in limiter

    def test_get_entry_returns_copy(self, limiter):
        limiter.check("client")
        entry = limiter.get_entry("client")
        entry.count = 1000

        assert limiter.get_entry("client").count == 1
        assert limiter.get_entry("missing") is None

    def test_check_admission_alias(self, limiter):
        assert limiter.check_admission("client").remaining == 59

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"requests_per_window": 0},
            {"window_seconds": 0},
            {"lock_stripes": 0},
        ],
    )
    def test_rejects_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(**kwargs)

    def test_concurrent_checks_do_not_lose_updates(self):
        """Test concurrent checks on one identifier admit exactly the quota."""
        limiter = FixedWindowRateLimiter(requests_per_window=500, lock_stripes=4)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            return [limiter.check("shared").allowed for _ in range(100)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = [f.result() for f in [pool.submit(worker) for _ in range(8)]]

        allowed = sum(flag for batch in results for flag in batch)
        assert allowed == 500
        assert limiter.get_entry("shared").count == 800

    def test_from_settings(self, clock):
        from gatekeeper.app.core.config import Settings

        config = Settings(
            _env_file=None,
            rate_limit_requests_per_window=3,
            rate_limit_window_seconds=5,
            rate_limit_lock_stripes=2,
        )
        limiter = FixedWindowRateLimiter.from_settings(config, clock=clock)

        assert limiter.requests_per_window == 3
        assert limiter.window_seconds == 5
        assert limiter.check("x").reset_at == clock.now + 5


class TestResolveClientIdentifier:
    """Tests for identifier resolution from proxy headers."""

    def test_first_forwarded_for_hop(self):
        headers = {"X-Forwarded-For": "203.0.113.5, 70.41.3.18"}
        assert resolve_client_identifier(headers) == "203.0.113.5"

    def test_forwarded_for_is_trimmed(self):
        headers = {"x-forwarded-for": "  198.51.100.7  ,10.0.0.1"}
        assert resolve_client_identifier(headers) == "198.51.100.7"

    def test_forwarded_for_wins_over_real_ip(self):
        headers = {"X-Real-IP": "10.0.0.2", "X-Forwarded-For": "10.0.0.1"}
        assert resolve_client_identifier(headers) == "10.0.0.1"

    def test_real_ip_used_verbatim(self):
        headers = {"X-Real-IP": " 10.0.0.2 "}
        assert resolve_client_identifier(headers) == " 10.0.0.2 "

    def test_no_headers_returns_unknown(self):
        assert resolve_client_identifier({}) == UNKNOWN_IDENTIFIER == "unknown"

    def test_empty_headers_fall_through(self):
        headers = {"X-Forwarded-For": "", "X-Real-IP": ""}
        assert resolve_client_identifier(headers) == "unknown"

    def test_ip_syntax_not_validated(self):
        assert resolve_client_identifier({"X-Forwarded-For": "not-an-ip"}) == "not-an-ip"

    def test_starlette_headers(self):
        headers = Headers(raw=[(b"x-real-ip", b"192.0.2.1")])
        assert resolve_client_identifier(headers) == "192.0.2.1"


class TestRateLimitHeaders:

    def test_headers_from_decision(self):
        decision = AdmissionDecision(allowed=True, limit=60, remaining=12, reset_at=1700000060.75)
        assert rate_limit_headers(decision) == {
            "X-RateLimit-Limit": "60",
            "X-RateLimit-Remaining": "12",
            "X-RateLimit-Reset": "1700000060",
        }


class TestRateLimitMiddleware:
    """Tests for the admission control middleware."""

    @pytest.fixture
    def limiter(self, clock):
        return FixedWindowRateLimiter(requests_per_window=2, window_seconds=60, clock=clock)

    @pytest.fixture
    def client(self, limiter):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware, limiter=limiter, exempt_paths=["/healthz"])

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        @app.get("/healthz")
        async def healthz():
            return {"status": "ok"}

        return TestClient(app)

    def test_allowed_response_has_rate_limit_headers(self, client, clock):
        resp = client.get("/ping", headers={"X-Forwarded-For": "203.0.113.5"})

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "1"
        assert resp.headers["X-RateLimit-Reset"] == str(int(clock.now + 60))

    def test_denied_request_gets_429(self, client):
        headers = {"X-Forwarded-For": "203.0.113.5"}
        client.get("/ping", headers=headers)
        client.get("/ping", headers=headers)

        resp = client.get("/ping", headers=headers)
        assert resp.status_code == 429
        assert resp.json() == {
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
        }
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_clients_counted_separately(self, client):
        for _ in range(3):
            client.get("/ping", headers={"X-Forwarded-For": "203.0.113.5"})

        resp = client.get("/ping", headers={"X-Real-IP": "198.51.100.1"})
        assert resp.status_code == 200

    def test_headerless_clients_share_unknown_bucket(self, client, limiter):
        client.get("/ping")
        client.get("/ping")

        assert client.get("/ping").status_code == 429
        assert limiter.get_entry("unknown").count == 3

    def test_window_rollover_readmits_client(self, client, clock):
        headers = {"X-Forwarded-For": "203.0.113.5"}
        for _ in range(3):
            client.get("/ping", headers=headers)

        clock.advance(61)
        assert client.get("/ping", headers=headers).status_code == 200

    def test_exempt_paths_not_counted(self, client, limiter):
        for _ in range(5):
            assert client.get("/healthz").status_code == 200

        assert len(limiter) == 0

    def test_limiter_from_app_state(self, limiter):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware)
        app.state.rate_limiter = limiter

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        client = TestClient(app)
        assert client.get("/ping").status_code == 200
        assert limiter.get_entry("unknown").count == 1

    def test_missing_limiter_raises(self):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware)

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        with pytest.raises(RuntimeError, match="Rate limiter not initialized"):
            TestClient(app).get("/ping")
