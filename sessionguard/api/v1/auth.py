"""Session routes - refresh, logout, session management"""

from fastapi import APIRouter, Depends, Query, Request, Response, status
from typing import Optional
import logging

from sessionguard.api.deps import (
    get_cookie_service,
    get_current_principal,
    get_device_metadata,
    get_session_service,
)
from sessionguard.schemas.auth import (
    LogoutRequest,
    PrincipalResponse,
    RefreshTokenRequest,
    RevokeResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
)
from sessionguard.services.cookie_service import CookieService
from sessionguard.services.session_service import (
    AuthSessionService,
    AuthenticatedPrincipal,
    DeviceMetadata,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/refresh", response_model=TokenResponse, status_code=status.HTTP_200_OK)
def refresh_session(
    request: Request,
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    device: DeviceMetadata = Depends(get_device_metadata),
    session_service: AuthSessionService = Depends(get_session_service),
    cookies: CookieService = Depends(get_cookie_service),
):
    """
    Rotate the presented refresh token

    Args:
        body: Optional refresh token for clients without cookie support

    Returns:
        New access token and the successor refresh token; both are also set as cookies
    """
    presented = cookies.read_refresh_token(request, body.refresh_token if body else None)
    pair = session_service.refresh(presented, device)

    cookies.issue_auth_cookies(
        response,
        access_token=pair.access_token,
        access_ttl_seconds=pair.access_ttl_seconds,
        refresh_token=pair.refresh_token,
        refresh_expires_at=pair.refresh_expires_at,
    )
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="bearer",
        expires_in=pair.access_ttl_seconds,
        refresh_expires_at=pair.refresh_expires_at,
        session_id=pair.family_id,
    )


@router.post("/logout", response_model=RevokeResponse, status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    session_service: AuthSessionService = Depends(get_session_service),
    cookies: CookieService = Depends(get_cookie_service),
):
    """
    End the current session

    Revokes the family of the presented refresh token and clears both cookies.
    Succeeds even when no token or an unknown token is presented.
    """
    presented = cookies.read_refresh_token(request, body.refresh_token if body else None)
    revoked = session_service.logout(presented)
    cookies.clear_auth_cookies(response)

    return RevokeResponse(message="Logged out successfully", revoked_count=revoked)


@router.post("/logout-all", response_model=RevokeResponse, status_code=status.HTTP_200_OK)
def logout_all(
    response: Response,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    session_service: AuthSessionService = Depends(get_session_service),
    cookies: CookieService = Depends(get_cookie_service),
):
    """End every session of the current user"""
    revoked = session_service.logout_all(principal.user_id)
    cookies.clear_auth_cookies(response)

    return RevokeResponse(message="All sessions revoked", revoked_count=revoked)


@router.get("/me", response_model=PrincipalResponse)
def get_current_principal_info(
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
):
    """Identity carried by the presented access token"""
    return PrincipalResponse(
        user_id=principal.user_id,
        roles=list(principal.roles),
        token_id=principal.token_id,
        expires_at=principal.expires_at,
    )


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(
    limit: Optional[int] = Query(default=None),
    include_revoked: bool = Query(default=False),
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    session_service: AuthSessionService = Depends(get_session_service),
):
    """
    List the current user's sessions

    Args:
        limit: Page size, clamped to the configured bounds
        include_revoked: Include sessions with no live refresh token

    Returns:
        Sessions, most recently used first
    """
    summaries = session_service.list_sessions(
        principal.user_id, limit=limit, include_revoked=include_revoked
    )
    sessions = [
        SessionResponse(
            session_id=s.family_id,
            created_at=s.created_at,
            last_used_at=s.last_used_at,
            active=s.active,
            token_count=s.token_count,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
        )
        for s in summaries
    ]
    return SessionListResponse(sessions=sessions, count=len(sessions))


@router.delete("/sessions/{family_id}", response_model=RevokeResponse)
def revoke_session(
    family_id: str,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    session_service: AuthSessionService = Depends(get_session_service),
):
    """
    Revoke one of the current user's sessions

    Revoking an unknown, foreign or already revoked session is a no-op.
    """
    revoked = session_service.revoke_session(principal.user_id, family_id)
    if revoked:
        logger.info("User %s revoked session %s", principal.user_id, family_id)
    return RevokeResponse(message="Session revoked", revoked_count=revoked)
