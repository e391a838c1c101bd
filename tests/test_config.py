import pytest
from pydantic import ValidationError

from sessionguard.config import Settings
from sessionguard.core.exceptions import ConfigurationError

STRONG_SECRET = "prod-signing-secret-0123456789abcdef"
STRONG_HASH_SECRET = "prod-refresh-hash-secret-0123456789ab"


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('["http://a.test","http://b.test"]', ["http://a.test", "http://b.test"]),
        ("http://a.test, http://b.test", ["http://a.test", "http://b.test"]),
        ("", []),
    ],
)
def test_cors_origins_parsing(raw, expected):
    assert _settings(CORS_ORIGINS=raw).CORS_ORIGINS == expected


def test_samesite_is_normalised():
    assert _settings(COOKIE_SAMESITE="Strict").COOKIE_SAMESITE == "strict"


def test_invalid_ttl_bounds_are_rejected():
    with pytest.raises(ValidationError):
        _settings(ACCESS_TOKEN_MIN_TTL_SECONDS=600, ACCESS_TOKEN_MAX_TTL_SECONDS=60)
    with pytest.raises(ValidationError):
        _settings(TOKEN_ISSUE_MAX_ATTEMPTS=0)


def test_database_url_defaults_to_local_sqlite():
    assert _settings(DATABASE_URL="").get_database_url().startswith("sqlite:///")
    assert _settings(DATABASE_URL="postgresql://db/tokens").get_database_url() == "postgresql://db/tokens"


def test_development_skips_security_validation():
    _settings(ENVIRONMENT="development").validate_security_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"JWT_SECRET": "change-me"},
        {"REFRESH_HASH_SECRET": "short"},
        {"REFRESH_HASH_SECRET": STRONG_SECRET},
        {"COOKIE_SECURE": False},
    ],
)
def test_production_rejects_insecure_settings(overrides):
    values = {
        "ENVIRONMENT": "production",
        "JWT_SECRET": STRONG_SECRET,
        "REFRESH_HASH_SECRET": STRONG_HASH_SECRET,
        "COOKIE_SECURE": True,
    }
    values.update(overrides)

    with pytest.raises(ConfigurationError):
        _settings(**values).validate_security_settings()


def test_production_accepts_strong_settings():
    _settings(
        ENVIRONMENT="production",
        JWT_SECRET=STRONG_SECRET,
        REFRESH_HASH_SECRET=STRONG_HASH_SECRET,
        COOKIE_SECURE=True,
    ).validate_security_settings()
