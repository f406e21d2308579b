import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from collabauth import app as app_module
from collabauth.api import schemas
from collabauth.config import Settings
from collabauth.service.tenants import TenantChoice
from collabauth.storage.models import Role, Tenant, User, UserTenantAssociation


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module so CORS settings come from the patched env."""

    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://suite.example.com, https://ops.example.com")
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app)
    response = client.get(
        "/healthz",
        headers={"Origin": "https://suite.example.com", "X-Request-ID": "req-123"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["version"] == app_module.__version__
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["access-control-allow-origin"] == "https://suite.example.com"


def test_unlisted_origin_gets_no_cors_header(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example.com"})

    assert "access-control-allow-origin" not in response.headers


def test_request_id_generated_when_absent():
    client = TestClient(app_module.app)

    response = client.get("/healthz")

    assert len(response.headers["X-Request-ID"]) == 36


def test_allowed_origins_default(monkeypatch):
    monkeypatch.setattr(app_module, "_settings", Settings())
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins


def test_allowed_origins_follow_app_origin(monkeypatch):
    monkeypatch.setattr(app_module, "_settings", Settings(app_origin="https://Suite.Example.com/"))
    assert app_module._allowed_origins() == ["https://suite.example.com"]


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("APP_BASE_PATH", "collab/")
    monkeypatch.setenv("LOGIN_PATHS", "/signin, /login.php")
    monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
    monkeypatch.setenv("REDIS_URL", "  ")

    settings = Settings.from_env()

    assert settings.app_base_path == "/collab"
    assert settings.login_paths == ["/signin", "/login.php"]
    assert settings.max_login_attempts == 7
    assert settings.redis_url is None


def test_settings_reject_non_positive_limits():
    with pytest.raises(ValidationError):
        Settings(session_idle_minutes=0)
    with pytest.raises(ValidationError):
        Settings(redirect_loop_threshold=-1)


def test_auth_action_request_normalizes_action():
    assert schemas.AuthActionRequest(action="  Switch_Tenant ").action == "switch_tenant"
    assert schemas.AuthActionRequest(action="   ").action is None
    # unknown keys are ignored rather than rejected
    assert schemas.AuthActionRequest(action="check", extra="x").action == "check"


def test_auth_action_request_bounds_lengths():
    with pytest.raises(ValidationError):
        schemas.AuthActionRequest(action="login", email="a" * 300 + "@example.com")
    with pytest.raises(ValidationError):
        schemas.AuthActionRequest(action="login", next="/" + "x" * 3000)


def test_navigation_request_requires_context():
    with pytest.raises(ValidationError):
        schemas.NavigationRequest(context="")
    with pytest.raises(ValidationError):
        schemas.NavigationRequest(context="x" * 65)


def test_user_payload_prefers_tenant_role():
    user = User(id=3, email="u@example.com", password_hash="h", role="guest")

    payload = schemas.UserPayload.from_user(user, Role.ADMIN)

    assert payload.role == "admin"
    assert payload.is_admin is True
    assert payload.name == "u@example.com"
    assert "password_hash" not in payload.model_dump()


def test_tenant_payload_from_choice():
    tenant = Tenant(id=9, code="acme", name="Acme")
    membership = UserTenantAssociation(user_id=3, tenant_id=9, is_default=True)

    payload = schemas.TenantPayload.from_choice(TenantChoice(tenant, membership))

    assert payload.model_dump() == {"id": 9, "code": "acme", "name": "Acme", "is_default": True}


def test_check_response_anonymous():
    assert schemas.CheckResponse.anonymous("session_expired").model_dump() == {
        "success": True,
        "authenticated": False,
        "user": None,
        "current_tenant_id": None,
        "reason": "session_expired",
    }
