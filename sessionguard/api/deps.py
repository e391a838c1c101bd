"""API dependencies - session services and authentication"""

from fastapi import Depends, Request
from functools import lru_cache

from sessionguard.config import settings
from sessionguard.core.database import SessionLocal
from sessionguard.core.security import AccessTokenCodec
from sessionguard.services.cookie_service import CookieService
from sessionguard.services.refresh_token_service import RefreshTokenService
from sessionguard.services.session_service import (
    AuthSessionService,
    AuthenticatedPrincipal,
    DeviceMetadata,
)

FINGERPRINT_HEADER = "x-device-fingerprint"
MAX_USER_AGENT_LENGTH = 500
MAX_FINGERPRINT_LENGTH = 128


@lru_cache()
def get_session_service() -> AuthSessionService:
    """
    Process-wide session service bound to the configured database

    Returns:
        AuthSessionService: Shared facade over the codec and the rotation engine

    Raises:
        ConfigurationError: If signing or hashing secrets are missing or weak
    """
    return AuthSessionService(
        AccessTokenCodec(settings),
        RefreshTokenService(SessionLocal, config=settings),
        config=settings,
    )


@lru_cache()
def get_cookie_service() -> CookieService:
    return CookieService(settings)


def get_device_metadata(request: Request) -> DeviceMetadata:
    """
    Client details stored alongside issued refresh tokens

    Args:
        request: Incoming request

    Returns:
        DeviceMetadata: Client address, user agent and optional fingerprint header
    """
    user_agent = request.headers.get("user-agent")
    fingerprint = request.headers.get(FINGERPRINT_HEADER)
    return DeviceMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
        fingerprint=fingerprint[:MAX_FINGERPRINT_LENGTH] if fingerprint else None,
    )


async def get_current_principal(
    request: Request,
    session_service: AuthSessionService = Depends(get_session_service),
    cookies: CookieService = Depends(get_cookie_service),
) -> AuthenticatedPrincipal:
    """
    Get the caller proven by the presented access token

    Args:
        request: Incoming request carrying the access cookie or a bearer header
        session_service: Session facade
        cookies: Cookie transport

    Returns:
        AuthenticatedPrincipal: Verified caller

    Raises:
        MissingTokenError: No access token presented
        TokenExpiredError: Access token expired
        InvalidTokenError: Access token rejected
    """
    token = cookies.read_access_token(request)
    return session_service.authenticate(token)
