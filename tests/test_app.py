"""
Tests for the FastAPI application
==================================
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shield.security import (
    SECURITY_HEADERS,
    SecurityConfig,
    SecurityGate,
    RateLimiter,
    RequestDefenseMiddleware,
)

import main


@pytest.fixture
def client():
    main.security_gate.reset_violation_stats()
    main.rate_limiter.clear()
    with TestClient(main.app) as test_client:
        yield test_client


class TestApplication:
    """End-to-end tests through the defense pipeline."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "Request Shield"
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert response.headers["X-RateLimit-Limit"] == str(main.config.RATE_LIMIT_PER_MINUTE)

    def test_explain_uses_cache(self, client):
        first = client.get("/api/explain/418")
        second = client.get("/api/explain/418")

        assert first.status_code == 200
        assert first.json()["code"] == 418
        assert first.json()["source"] == "http-registry"
        assert second.json()["source"] == "cache"

    def test_explain_unknown_code(self, client):
        assert client.get("/api/explain/799").status_code == 404

    def test_clean_post_passes_gate(self, client):
        response = client.post("/api/explain/404", json={"name": "Alice"})
        # Route only accepts GET
        assert response.status_code == 405

    def test_xss_blocked(self, client):
        response = client.post("/api/explain/404", json={"comment": "<script>alert(1)</script>"})

        assert response.status_code == 400
        assert response.json()["error"] == "Request blocked due to security policy violation"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_sql_injection_blocked(self, client):
        response = client.post("/api/explain/404", json={"query": "1; DROP TABLE users"})

        assert response.status_code == 403
        assert response.json()["code"] == 403

    def test_wrong_content_type_blocked(self, client):
        response = client.post(
            "/api/explain/404",
            content="name=alice",
            headers={"Content-Type": "text/plain"},
        )
        assert response.status_code == 400

    def test_status_reports_violations(self, client):
        client.post(
            "/api/explain/404",
            json={"query": "1; DROP TABLE users"},
            headers={"X-Forwarded-For": "203.0.113.50"},
        )

        body = client.get("/status").json()

        assert body["violations"]["top_violators"][0]["ip"] == "203.0.113.50"
        assert body["cache"]["primary_healthy"] is True
        assert "total_keys" in body["rate_limiter"]
        assert "total_signatures" in body["signatures"]

    def test_health_probes_skip_pipeline(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
        assert client.get("/startup").json() == {"status": "ready"}


class TestDefenseMiddleware:
    """Tests for RequestDefenseMiddleware wiring."""

    def _app(self, limit: int, enforce_https: bool = False) -> FastAPI:
        app = FastAPI()
        defense = RequestDefenseMiddleware(
            gate=SecurityGate(SecurityConfig(enforce_https=enforce_https)),
            rate_limiter=RateLimiter(requests_per_window=limit),
            excluded_paths=["/health"],
        )

        @app.middleware("http")
        async def request_defense(request, call_next):
            return await defense.process(request, call_next)

        @app.get("/ping")
        async def ping():
            return {"pong": True}

        @app.get("/health")
        async def health():
            return {"status": "healthy"}

        return app

    def test_rate_limited_with_headers(self):
        client = TestClient(self._app(limit=2))

        assert client.get("/ping").headers["X-RateLimit-Remaining"] == "1"
        assert client.get("/ping").headers["X-RateLimit-Remaining"] == "0"
        response = client.get("/ping")

        assert response.status_code == 429
        assert response.json()["error"] == "Too Many Requests"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_excluded_path_not_limited(self):
        client = TestClient(self._app(limit=1))
        for _ in range(3):
            response = client.get("/health")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_https_enforced_behind_proxy(self):
        client = TestClient(self._app(limit=10, enforce_https=True))

        assert client.get("/ping").status_code == 400
        assert client.get("/ping", headers={"X-Forwarded-Proto": "https"}).status_code == 200

    def test_blocked_request_not_counted(self):
        client = TestClient(self._app(limit=1, enforce_https=True))

        client.get("/ping")
        response = client.get("/ping", headers={"X-Forwarded-Proto": "https"})

        assert response.status_code == 200
