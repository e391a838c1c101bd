"""Cookie and header transport for access and refresh tokens."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import ConfigurationError, InvalidArgumentError

BEARER_PREFIX = "bearer "


class CookieService:
    """Read presented tokens from requests and write issued tokens to responses."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings
        self.samesite = self._settings.COOKIE_SAMESITE
        self.secure = self._settings.COOKIE_SECURE
        self.domain = self._settings.COOKIE_DOMAIN or None
        self.access_name = self._settings.ACCESS_COOKIE_NAME
        self.refresh_name = self._settings.REFRESH_COOKIE_NAME
        self.refresh_path = self._settings.REFRESH_COOKIE_PATH

        if self.samesite == "none" and not self.secure:
            raise ConfigurationError("SameSite=None requires Secure cookies")

    def read_access_token(self, request: Request) -> Optional[str]:
        """
        Presented access token: cookie first, then `Authorization: Bearer`.

        Returns:
            Optional[str]: Token string or None when absent
        """
        cookie_val = request.cookies.get(self.access_name)
        if cookie_val:
            return cookie_val

        auth = request.headers.get("authorization")
        if auth and auth.lower().startswith(BEARER_PREFIX):
            token = auth[len(BEARER_PREFIX):].strip()
            return token or None
        return None

    def read_refresh_token(self, request: Request, fallback: Optional[str] = None) -> Optional[str]:
        """Presented refresh token: cookie first, then an explicit fallback (e.g. a body field)."""
        cookie_val = request.cookies.get(self.refresh_name)
        if cookie_val:
            return cookie_val
        return fallback or None

    def issue_auth_cookies(
        self,
        response: Response,
        *,
        access_token: str,
        access_ttl_seconds: int,
        refresh_token: str,
        refresh_expires_at: datetime,
    ) -> None:
        """
        Set both token cookies, HttpOnly.

        Raises:
            InvalidArgumentError: If either token is empty
        """
        if not access_token or not access_token.strip():
            raise InvalidArgumentError("Access token is required and must be a non-empty string")
        if not refresh_token or not refresh_token.strip():
            raise InvalidArgumentError("Refresh token is required and must be a non-empty string")

        if refresh_expires_at.tzinfo is None:
            refresh_expires_at = refresh_expires_at.replace(tzinfo=timezone.utc)

        response.set_cookie(
            self.access_name,
            access_token,
            max_age=int(access_ttl_seconds),
            path="/",
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )
        response.set_cookie(
            self.refresh_name,
            refresh_token,
            expires=refresh_expires_at,
            path=self.refresh_path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def clear_auth_cookies(self, response: Response) -> None:
        response.delete_cookie(
            self.access_name,
            path="/",
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )
        response.delete_cookie(
            self.refresh_name,
            path=self.refresh_path,
            domain=self.domain,
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )
