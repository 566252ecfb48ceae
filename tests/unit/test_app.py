"""HTTP-level tests for the FastAPI application."""

import re
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import PRIMARY_SECRET, FakeDatabase
from streamgate.app import build_gateway, build_limiter, create_app
from streamgate.core.errors import GatewayError
from streamgate.core.settings import GatewaySettings
from streamgate.database import UnconfiguredDatabase
from streamgate.engines.inspector import SECURITY_HEADERS
from streamgate.engines.rate_limiter import InMemoryRateLimiter
from streamgate.engines.token_verifier import TokenVerifier


def make_settings(**overrides: Any) -> GatewaySettings:
    return GatewaySettings(primary_secret=PRIMARY_SECRET, **overrides)


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase([{"id": "f1", "title": "Lagos Nights"}])


@pytest.fixture
def client(db: FakeDatabase):
    app = create_app(make_settings(), database=db, limiter=InMemoryRateLimiter())
    with TestClient(app) as test_client:
        yield test_client


class TestRoutes:
    """Tests for the public routes."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/api/health")
        body = response.json()

        assert response.status_code == 200
        assert body["error"] is None
        assert body["data"]["status"] == "ok"
        assert body["data"]["database"] is True

    def test_query(self, client: TestClient, db: FakeDatabase) -> None:
        response = client.post("/api/query", json={"table": "films", "operation": "select", "limit": 1})

        assert response.status_code == 200
        assert response.json() == {"data": [{"id": "f1", "title": "Lagos Nights"}], "error": None}
        assert response.headers["cache-control"].startswith("public")
        assert response.headers["x-ratelimit-limit"] == "120"
        assert db.calls == [("SELECT * FROM films LIMIT $1", (1,))]

    def test_write_owner_overwritten(self, client: TestClient, db: FakeDatabase) -> None:
        token = TokenVerifier(PRIMARY_SECRET).issue("user-1")
        response = client.post(
            "/api/query",
            json={"table": "watchlists", "operation": "insert", "data": {"film_id": "f1", "user_id": "user-2"}},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 200
        assert db.calls[0][0] == "INSERT INTO watchlists (film_id, user_id) VALUES ($1, $2) RETURNING *"
        assert db.calls[0][1] == ("f1", "user-1")

    def test_invalid_json(self, client: TestClient) -> None:
        response = client.post(
            "/api/query",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["data"] is None
        assert response.json()["error"]["message"]

    def test_blocked_request(self, client: TestClient) -> None:
        response = client.post(
            "/api/query",
            json={"table": "films", "operation": "select"},
            headers={"User-Agent": "sqlmap/1.7"},
        )
        assert response.status_code == 403
        assert response.json() == {"data": None, "error": {"message": "Request blocked by security policy"}}

    def test_impression(self, client: TestClient) -> None:
        response = client.post("/api/ads/impression", json={"type": "click", "slotId": "s1"})
        assert response.json() == {"data": {"logged": True}, "error": None}

    def test_view(self, client: TestClient) -> None:
        response = client.post("/api/films/view", json={})
        assert response.status_code == 400
        assert response.json()["error"] == {"message": "Film ID is required"}

    def test_method_not_allowed(self, client: TestClient) -> None:
        response = client.get("/api/query")
        assert response.status_code == 405
        assert response.json()["data"] is None
        assert response.json()["error"]["message"]

    def test_unknown_route(self, client: TestClient) -> None:
        response = client.get("/api/missing")
        assert response.status_code == 404
        assert set(response.json()) == {"data", "error"}


class TestMiddleware:
    """Tests for correlation and security headers."""

    def test_correlation_id_echoed(self, client: TestClient) -> None:
        response = client.get("/api/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Correlation-ID"] == "req-42"

    def test_correlation_id_generated(self, client: TestClient) -> None:
        response = client.get("/api/health")
        assert re.fullmatch(r"sg-[0-9a-f]{16}", response.headers["X-Correlation-ID"])

    def test_security_headers(self, client: TestClient) -> None:
        response = client.get("/api/health")
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value

    def test_security_headers_on_errors(self, client: TestClient) -> None:
        response = client.post("/api/query", json="scalar")
        assert response.status_code == 400
        assert response.headers["X-Frame-Options"] == "DENY"


class TestErrorHandlers:
    """Tests for exception handlers on routes outside the gateway."""

    @pytest.fixture
    def app(self) -> FastAPI:
        app = create_app(make_settings(), database=FakeDatabase(), limiter=InMemoryRateLimiter())

        @app.get("/boom")
        async def boom() -> None:
            raise RuntimeError("stack trace with secrets")

        @app.get("/denied")
        async def denied() -> None:
            raise GatewayError("Service unavailable")

        return app

    def test_unhandled_exception_is_generic(self, app: FastAPI) -> None:
        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json() == {"data": None, "error": {"message": "Internal server error"}}

    def test_gateway_error(self, app: FastAPI) -> None:
        response = TestClient(app).get("/denied")
        assert response.status_code == 500
        assert response.json() == {"data": None, "error": {"message": "Service unavailable"}}


class TestCors:
    """Tests for browser cross-origin access."""

    def test_preflight_to_query(self, client: TestClient) -> None:
        response = client.options(
            "/api/query",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type, Authorization",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_query_response_allows_origin(self, client: TestClient) -> None:
        response = client.post(
            "/api/query",
            json={"table": "films", "operation": "select"},
            headers={"Origin": "https://app.example.com"},
        )
        assert response.headers["access-control-allow-origin"] == "*"

    def test_configured_origins(self, db: FakeDatabase) -> None:
        settings = make_settings(cors_origins=("https://app.example.com",))
        app = create_app(settings, database=db, limiter=InMemoryRateLimiter())
        preflight = {"Access-Control-Request-Method": "POST"}

        with TestClient(app) as client:
            allowed = client.options(
                "/api/query", headers={"Origin": "https://app.example.com", **preflight}
            )
            refused = client.options(
                "/api/query", headers={"Origin": "https://evil.example.net", **preflight}
            )

        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "https://app.example.com"
        assert refused.status_code == 400
        assert "access-control-allow-origin" not in refused.headers


class TestWiring:
    """Tests for build_gateway and build_limiter."""

    def test_unconfigured_database(self) -> None:
        gateway = build_gateway(make_settings(), limiter=InMemoryRateLimiter())
        assert isinstance(gateway.database, UnconfiguredDatabase)
        assert gateway.inspector is not None

    def test_inspection_disabled(self) -> None:
        gateway = build_gateway(make_settings(inspect_requests=False), database=FakeDatabase())
        assert gateway.inspector is None

    def test_default_limiter_in_memory(self) -> None:
        assert isinstance(build_limiter(make_settings()), InMemoryRateLimiter)

    def test_unconfigured_health(self) -> None:
        app = create_app(make_settings(), limiter=InMemoryRateLimiter())
        with TestClient(app) as client:
            assert client.get("/api/health").json()["data"]["database"] is False
            response = client.post("/api/films/view", json={"filmId": "f1"})
        assert response.status_code == 500
        assert response.json()["error"] == {"message": "Internal server error"}
