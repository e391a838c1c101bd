from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request
from starlette.responses import Response

from sessionguard.config import Settings
from sessionguard.core.exceptions import ConfigurationError, InvalidArgumentError
from sessionguard.services.cookie_service import CookieService


def _make_cookies(**overrides):
    return CookieService(Settings(_env_file=None, **overrides))


def _request(headers):
    raw = [(name.lower().encode(), value.encode()) for name, value in headers.items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw})


def _set_cookie_headers(response):
    return [value for name, value in response.raw_headers if name == b"set-cookie"]


def test_samesite_none_requires_secure():
    with pytest.raises(ConfigurationError):
        _make_cookies(COOKIE_SAMESITE="None", COOKIE_SECURE=False)

    assert _make_cookies(COOKIE_SAMESITE="none", COOKIE_SECURE=True).samesite == "none"


def test_access_token_prefers_cookie_over_header():
    cookies = _make_cookies()
    request = _request({"Cookie": "access_token=from-cookie", "Authorization": "Bearer from-header"})

    assert cookies.read_access_token(request) == "from-cookie"


def test_access_token_falls_back_to_bearer_header():
    cookies = _make_cookies()

    assert cookies.read_access_token(_request({"Authorization": "Bearer abc.def"})) == "abc.def"
    assert cookies.read_access_token(_request({"Authorization": "Basic Zm9vOmJhcg=="})) is None
    assert cookies.read_access_token(_request({"Authorization": "Bearer   "})) is None
    assert cookies.read_access_token(_request({})) is None


def test_refresh_token_cookie_then_fallback():
    cookies = _make_cookies()

    assert cookies.read_refresh_token(_request({"Cookie": "refresh_token=r1"}), "body") == "r1"
    assert cookies.read_refresh_token(_request({}), "body") == "body"
    assert cookies.read_refresh_token(_request({}), "") is None


def test_issue_auth_cookies():
    cookies = _make_cookies(COOKIE_SECURE=True, COOKIE_SAMESITE="strict")
    response = Response()

    cookies.issue_auth_cookies(
        response,
        access_token="access-value",
        access_ttl_seconds=900,
        refresh_token="refresh-value",
        refresh_expires_at=datetime.now(timezone.utc) + timedelta(days=30),
    )

    access_header, refresh_header = [h.decode() for h in _set_cookie_headers(response)]
    assert access_header.startswith("access_token=access-value")
    assert "Max-Age=900" in access_header
    assert "Path=/" in access_header
    assert refresh_header.startswith("refresh_token=refresh-value")
    assert "Path=/api/v1/auth" in refresh_header
    assert "expires=" in refresh_header
    for header in (access_header, refresh_header):
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=strict" in header


def test_issue_auth_cookies_rejects_empty_tokens():
    cookies = _make_cookies()

    with pytest.raises(InvalidArgumentError):
        cookies.issue_auth_cookies(
            Response(),
            access_token="",
            access_ttl_seconds=900,
            refresh_token="refresh-value",
            refresh_expires_at=datetime.now(timezone.utc),
        )
    with pytest.raises(InvalidArgumentError):
        cookies.issue_auth_cookies(
            Response(),
            access_token="access-value",
            access_ttl_seconds=900,
            refresh_token="  ",
            refresh_expires_at=datetime.now(timezone.utc),
        )


def test_clear_auth_cookies():
    response = Response()

    _make_cookies().clear_auth_cookies(response)

    headers = [h.decode() for h in _set_cookie_headers(response)]
    assert len(headers) == 2
    assert headers[0].startswith('access_token=""')
    assert headers[1].startswith('refresh_token=""')
    assert all("Max-Age=0" in h for h in headers)
