"""Authentication and session schemas"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class RefreshTokenRequest(BaseModel):
    """Refresh token for clients that cannot hold cookies"""
    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    """Optional refresh token to revoke on logout"""
    refresh_token: Optional[str] = Field(default=None, min_length=1, max_length=512)


class TokenResponse(BaseModel):
    """Issued token pair"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime
    session_id: str


class PrincipalResponse(BaseModel):
    """Identity carried by the presented access token"""
    user_id: str
    roles: List[str]
    token_id: str
    expires_at: int


class SessionResponse(BaseModel):
    """One active or historical session (token family)"""
    session_id: str
    created_at: datetime
    last_used_at: datetime
    active: bool
    token_count: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionListResponse(BaseModel):
    """Sessions, most recently used first"""
    sessions: List[SessionResponse]
    count: int


class RevokeResponse(BaseModel):
    """Outcome of a revocation request"""
    success: bool = True
    message: str
    revoked_count: int
