import pytest
from fastapi.testclient import TestClient
from pagelink import main

pytestmark = pytest.mark.unit


def test_root_reports_service_running():
    assert main.root() == {"message": "pagelink API is running"}


def test_health_endpoint_returns_ok():
    client = TestClient(main.app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ready_endpoint_success_and_failure(monkeypatch):
    client = TestClient(main.app, raise_server_exceptions=False)

    monkeypatch.setattr(
        main,
        "readiness_state",
        lambda: (True, {"database": True, "redis": True, "facebook_configured": False}),
    )
    success = client.get("/ready")
    assert success.status_code == 200
    assert success.json()["checks"]["facebook_configured"] is False

    monkeypatch.setattr(main, "readiness_state", lambda: (False, {"database": False, "redis": True}))
    failed = client.get("/ready")
    assert failed.status_code == 503
    assert failed.json()["error_code"] == "service_not_ready"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/api/v1/login", True),
        ("/api/v1/auth/linking-intent", True),
        ("/api/v1/auth/oauth/facebook/callback", True),
        ("/api/v1/account/debug-token", True),
        ("/api/v1/pages", True),
        ("/api/v1/pages/refresh-tokens", True),
        ("/health", False),
        ("/ready", False),
    ],
)
def test_credential_paths_are_detected(path, expected):
    assert main.carries_credentials(path) is expected


def test_credential_responses_are_not_cached():
    client = TestClient(main.app)

    pages_response = client.get("/api/v1/pages")
    assert pages_response.status_code == 401
    assert pages_response.headers["cache-control"] == "no-store"
    assert pages_response.headers["referrer-policy"] == "no-referrer"

    health_response = client.get("/health")
    assert "cache-control" not in health_response.headers
    assert health_response.headers["x-content-type-options"] == "nosniff"


def test_security_headers_can_be_disabled(monkeypatch):
    monkeypatch.setattr(main.settings, "security_headers_enabled", False)
    client = TestClient(main.app)
    response = client.get("/health")
    assert "x-content-type-options" not in response.headers


def test_security_headers_include_hsts_for_https(monkeypatch):
    monkeypatch.setattr(main.settings, "security_hsts_enabled", True)
    client = TestClient(main.app, base_url="https://testserver")
    response = client.get("/health")
    assert response.headers["strict-transport-security"].startswith("max-age=")


def test_include_api_routers_rejects_invalid_latest_version(monkeypatch):
    monkeypatch.setattr(main.settings, "api_latest_version", "v9")
    monkeypatch.setattr(main.settings, "api_supported_versions", ["v1"])
    with pytest.raises(RuntimeError):
        main._include_api_routers()


def test_linking_and_page_routes_are_mounted():
    paths = {getattr(route, "path", None) for route in main.app.routes}
    assert {
        "/api/v1/auth/linking-intent",
        "/api/v1/auth/oauth/{provider}/callback",
        "/api/v1/auth/oauth/{provider}/link-account",
        "/api/v1/account/disconnect",
        "/api/v1/account/refresh-token",
        "/api/v1/account/debug-token",
        "/api/v1/pages",
        "/api/v1/pages/{page_id}",
        "/api/v1/pages/refresh-tokens",
    } <= paths
