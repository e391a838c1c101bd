"""Session lifecycle facade: login, refresh, logout, authenticate, list."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import InvalidArgumentError
from sessionguard.core.security import AccessTokenCodec
from sessionguard.services.refresh_token_service import RefreshTokenService
from sessionguard.services.session_summary import SessionSummary

logger = logging.getLogger(__name__)

RoleResolver = Callable[[str], Sequence[str]]


@dataclass(frozen=True)
class DeviceMetadata:
    """Client details captured when a refresh token is issued."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """Identity proven by a verified access token."""

    user_id: str
    token_id: str
    expires_at: int
    roles: Tuple[str, ...] = field(default_factory=tuple)

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh tokens issued together."""

    user_id: str
    access_token: str
    access_expires_at: int
    access_ttl_seconds: int
    refresh_token: str
    refresh_expires_at: datetime
    family_id: str


def _no_roles(user_id: str) -> Sequence[str]:
    return ()


class AuthSessionService:
    """Compose the access token codec and the refresh token engine."""

    def __init__(
        self,
        access_codec: AccessTokenCodec,
        refresh_service: RefreshTokenService,
        *,
        config: Optional[Settings] = None,
        role_resolver: Optional[RoleResolver] = None,
    ) -> None:
        self._access = access_codec
        self._refresh = refresh_service
        self._settings = config or default_settings
        self._role_resolver = role_resolver or _no_roles

    @property
    def access_codec(self) -> AccessTokenCodec:
        return self._access

    def login(
        self,
        user_id: str,
        device: Optional[DeviceMetadata] = None,
        roles: Optional[Sequence[str]] = None,
    ) -> TokenPair:
        """
        Start a new session for an already-authenticated user.

        Args:
            user_id: Subject whose credentials were checked by the caller
            device: Client metadata stored with the refresh token
            roles: Role tags for the access token, resolved when omitted

        Returns:
            TokenPair: Fresh access token and the first token of a new family
        """
        device = device or DeviceMetadata()
        if roles is None:
            roles = self._role_resolver(user_id)

        access = self._access.create_access_token(user_id, roles=roles)
        refresh = self._refresh.create_refresh_token(
            user_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            fingerprint=device.fingerprint,
        )
        logger.info("Session %s started for user %s", refresh.family_id, user_id)
        return TokenPair(
            user_id=str(user_id),
            access_token=access.token,
            access_expires_at=access.expires_at,
            access_ttl_seconds=access.expires_at - access.issued_at,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
            family_id=refresh.family_id,
        )

    def refresh(self, refresh_token: Optional[str], device: Optional[DeviceMetadata] = None) -> TokenPair:
        """
        Rotate a refresh token and mint a matching access token.

        Raises:
            MissingTokenError: No token presented
            InvalidOrReusedTokenError: Token dead or replayed; re-authenticate
        """
        device = device or DeviceMetadata()
        rotated = self._refresh.rotate_refresh_token(
            refresh_token,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        access = self._access.create_access_token(
            rotated.user_id, roles=self._role_resolver(rotated.user_id)
        )
        return TokenPair(
            user_id=rotated.user_id,
            access_token=access.token,
            access_expires_at=access.expires_at,
            access_ttl_seconds=access.expires_at - access.issued_at,
            refresh_token=rotated.token,
            refresh_expires_at=rotated.expires_at,
            family_id=rotated.family_id,
        )

    def logout(self, refresh_token: Optional[str]) -> int:
        """Revoke the presented token's family. No token revokes nothing."""
        if not refresh_token:
            return 0
        return self._refresh.revoke_by_token(refresh_token)

    def logout_all(self, user_id: str) -> int:
        """Revoke every session of a user."""
        revoked = self._refresh.revoke_refresh_token(user_id=user_id)
        logger.info("Revoked all sessions of user %s (%d tokens)", user_id, revoked)
        return revoked

    def authenticate(self, access_token: Optional[str]) -> AuthenticatedPrincipal:
        claims = self._access.verify_access_token(access_token)
        return AuthenticatedPrincipal(
            user_id=claims.user_id,
            token_id=claims.token_id,
            expires_at=claims.expires_at,
            roles=tuple(claims.roles),
        )

    def list_sessions(
        self,
        user_id: str,
        *,
        limit: Optional[int] = None,
        include_revoked: bool = False,
    ) -> List[SessionSummary]:
        return self._refresh.list_user_sessions(
            user_id, include_revoked=include_revoked, limit=limit
        )

    def revoke_session(self, user_id: str, family_id: str) -> int:
        """Revoke one of the user's own sessions."""
        if not family_id:
            raise InvalidArgumentError("family_id is required")
        return self._refresh.revoke_refresh_token(family_id=family_id, user_id=user_id)
