"""Pydantic schemas for API validation"""

from sessionguard.schemas.auth import (
    RefreshTokenRequest,
    LogoutRequest,
    TokenResponse,
    PrincipalResponse,
    SessionResponse,
    SessionListResponse,
    RevokeResponse,
)
from sessionguard.schemas.response import ErrorResponse, HealthResponse

__all__ = [
    "RefreshTokenRequest", "LogoutRequest", "TokenResponse", "PrincipalResponse",
    "SessionResponse", "SessionListResponse", "RevokeResponse",
    "ErrorResponse", "HealthResponse",
]
