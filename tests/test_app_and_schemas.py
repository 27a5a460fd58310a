import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from teamgate import app as app_module
from teamgate.api import schemas
from teamgate.config import reset_settings_cache


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        reset_settings_cache()
        importlib.reload(app_module)


def test_security_headers_and_cors(fresh_app):
    client = TestClient(fresh_app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert response.headers["API-Version"] == app_module.__version__
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert origins == ["https://example.com", "https://demo.local"]


def test_register_request_validates_email_and_password():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(email="invalid", password="Password1")
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(email="user@example.com", password="Short1")

    req = schemas.RegisterRequest(email=" User@Example.com ", password="Password1")
    assert req.email == "user@example.com"


def test_email_strips_zero_width_characters():
    req = schemas.InviteRequest(email="bob\u200b@example.com")
    assert req.email == "bob@example.com"


@pytest.mark.parametrize("slug", ["core", "core-team", "team-2025"])
def test_team_slug_accepts_kebab_case(slug):
    assert schemas.TeamCreateRequest(name="Core", slug=slug).slug == slug


@pytest.mark.parametrize("slug", ["Core", "core_team", "-core", "core--team"])
def test_team_slug_rejects_other_shapes(slug):
    with pytest.raises(ValidationError):
        schemas.TeamCreateRequest(name="Core", slug=slug)


def test_team_name_must_not_be_blank():
    with pytest.raises(ValidationError):
        schemas.TeamCreateRequest(name="   ")


def test_team_update_requires_a_field():
    with pytest.raises(ValidationError):
        schemas.TeamUpdateRequest()
    assert schemas.TeamUpdateRequest(name="Renamed").name == "Renamed"


def test_join_token_length_is_exact():
    with pytest.raises(ValidationError):
        schemas.JoinTeamRequest(token="a" * 39)
    with pytest.raises(ValidationError):
        schemas.JoinTeamRequest(token="a" * 41)
    assert schemas.JoinTeamRequest(token="a" * 40).token == "a" * 40


def test_token_response_defaults_to_bearer():
    assert schemas.TokenResponse(access_token="x", expires_in=60).token_type == "Bearer"
