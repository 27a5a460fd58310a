import pytest
from pydantic import ValidationError

from teamgate.config import Settings, SigningAlgorithm, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run with an empty working directory and only the variables a test sets."""
    for name in (
        "JWT_SECRET",
        "JWT_ALGO",
        "JWT_TTL",
        "JWT_REFRESH_TTL",
        "JWT_LEEWAY",
        "REDIS_URL",
        "TEST_MODE",
        "REVOCATION_FAIL_OPEN",
        "CORS_ALLOW_ORIGINS",
        "INVITATION_TTL_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_defaults(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)

    settings = Settings.from_env()

    assert settings.jwt_algorithm == SigningAlgorithm.HS256
    assert settings.token_ttl_seconds == 3600
    assert settings.refresh_window_seconds == 14 * 24 * 3600
    assert settings.jwt_leeway_seconds == 0
    assert settings.revocation_fail_open is True
    assert settings.invitation_ttl_days == 7


def test_environment_overrides(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    clean_env.setenv("JWT_ALGO", "HS512")
    clean_env.setenv("JWT_TTL", "15")
    clean_env.setenv("JWT_LEEWAY", "5")
    clean_env.setenv("REVOCATION_FAIL_OPEN", "false")
    clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

    settings = Settings.from_env()

    assert settings.jwt_algorithm == SigningAlgorithm.HS512
    assert settings.token_ttl_seconds == 900
    assert settings.jwt_leeway_seconds == 5
    assert settings.revocation_fail_open is False
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_dotenv_file_is_read(clean_env, tmp_path):
    (tmp_path / ".env").write_text("JWT_SECRET=from-dotenv-" + "y" * 32 + "\nJWT_TTL=30\n")

    settings = Settings.from_env()

    assert settings.jwt_secret.startswith("from-dotenv-")
    assert settings.jwt_ttl_minutes == 30


def test_environment_wins_over_dotenv(clean_env, tmp_path):
    (tmp_path / ".env").write_text("JWT_SECRET=" + "y" * 40 + "\nJWT_TTL=30\n")
    clean_env.setenv("JWT_TTL", "45")

    assert Settings.from_env().jwt_ttl_minutes == 45


def test_secret_required_outside_test_mode(clean_env):
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_secret_generated_in_test_mode(clean_env):
    clean_env.setenv("TEST_MODE", "true")

    settings = Settings.from_env()

    assert settings.jwt_secret
    assert len(settings.jwt_secret) >= 32


def test_unknown_algorithm_rejected(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    clean_env.setenv("JWT_ALGO", "RS256")

    with pytest.raises(ValidationError):
        Settings.from_env()


@pytest.mark.parametrize(
    "name,value",
    [("JWT_TTL", "0"), ("INVITATION_TTL_DAYS", "-1"), ("JWT_LEEWAY", "-5")],
)
def test_invalid_numbers_rejected(clean_env, name, value):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    clean_env.setenv(name, value)

    with pytest.raises(ValidationError):
        Settings.from_env()


def test_refresh_window_must_cover_ttl(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    clean_env.setenv("JWT_TTL", "120")
    clean_env.setenv("JWT_REFRESH_TTL", "60")

    with pytest.raises(ValidationError):
        Settings.from_env()


def test_blank_redis_url_disables_redis(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    clean_env.setenv("REDIS_URL", "  ")

    assert Settings.from_env().redis_url is None


def test_settings_are_cached_until_reset(clean_env):
    clean_env.setenv("JWT_SECRET", "x" * 48)
    reset_settings_cache()
    first = get_settings()

    clean_env.setenv("JWT_TTL", "5")
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().jwt_ttl_minutes == 5
