"""Access token codec - stateless signed JWTs"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
import uuid

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import (
    ConfigurationError,
    InvalidArgumentError,
    InvalidTokenError,
    MissingTokenError,
    TokenExpiredError,
    TokenVerificationFailedError,
)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class IssuedAccessToken:
    """A freshly signed access token"""
    token: str
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class AccessTokenClaims:
    """Claims recovered from a verified access token"""
    user_id: str
    issued_at: int
    expires_at: int
    token_id: str
    issuer: str
    audience: str
    roles: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _KeyMaterial:
    algorithm: str
    key: str
    kid: Optional[str] = None


def _to_timestamp(value: Optional[datetime]) -> int:
    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class AccessTokenCodec:
    """Sign and verify short-lived access tokens with configured key material."""

    def __init__(self, config: Optional[Settings] = None) -> None:
        self._settings = config or default_settings
        self._signing: Optional[_KeyMaterial] = None
        self._verification: Optional[_KeyMaterial] = None

    def _check_secret(self) -> str:
        secret = self._settings.JWT_SECRET
        if not secret or len(secret) < self._settings.JWT_MIN_SECRET_LENGTH:
            raise ConfigurationError("JWT_SECRET missing or weak")
        return secret

    def _signing_material(self) -> _KeyMaterial:
        if self._signing is None:
            alg = self._settings.JWT_ALG
            kid = self._settings.JWT_KID.strip() or None
            if self._settings.uses_symmetric_signing:
                key = self._check_secret()
            else:
                key = self._settings.JWT_PRIVATE_KEY.strip()
                if not key:
                    raise ConfigurationError(f"JWT_PRIVATE_KEY is required for {alg}")
            self._signing = _KeyMaterial(algorithm=alg, key=key, kid=kid)
        return self._signing

    def _verification_material(self) -> _KeyMaterial:
        if self._verification is None:
            alg = self._settings.JWT_ALG
            if self._settings.uses_symmetric_signing:
                key = self._check_secret()
            else:
                key = self._settings.JWT_PUBLIC_KEY.strip()
                if not key:
                    raise ConfigurationError(f"JWT_PUBLIC_KEY is required for {alg}")
            self._verification = _KeyMaterial(algorithm=alg, key=key)
        return self._verification

    def ensure_ready(self) -> None:
        """
        Resolve key material eagerly so weak configuration fails at startup.

        Raises:
            ConfigurationError: If the signing or verification key is absent or weak
        """
        if self._settings.uses_symmetric_signing or self._settings.JWT_PRIVATE_KEY.strip():
            self._signing_material()
        self._verification_material()

    def _clamp_ttl(self, expires_delta: Optional[timedelta]) -> int:
        if expires_delta is None:
            seconds = self._settings.ACCESS_TOKEN_TTL_SECONDS
        else:
            seconds = int(expires_delta.total_seconds())
        return max(
            self._settings.ACCESS_TOKEN_MIN_TTL_SECONDS,
            min(seconds, self._settings.ACCESS_TOKEN_MAX_TTL_SECONDS),
        )

    def create_access_token(
        self,
        user_id: str,
        roles: Optional[Sequence[str]] = None,
        expires_delta: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> IssuedAccessToken:
        """
        Create a signed access token

        Args:
            user_id: Subject identifier
            roles: Optional role tags
            expires_delta: Requested lifetime, clamped to the configured bounds
            now: Issue time override

        Returns:
            IssuedAccessToken: Compact JWT with its iat/exp/jti

        Raises:
            ConfigurationError: If the signing key is absent or weak
        """
        material = self._signing_material()
        if not user_id:
            raise InvalidArgumentError("user_id is required")

        issued_at = _to_timestamp(now)
        expires_at = issued_at + self._clamp_ttl(expires_delta)
        token_id = str(uuid.uuid4())

        claims: Dict[str, Any] = {
            "sub": str(user_id),
            "roles": list(roles or []),
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
            "iss": self._settings.JWT_ISS,
            "aud": self._settings.JWT_AUD,
            "typ": ACCESS_TOKEN_TYPE,
        }
        headers = {"kid": material.kid} if material.kid else None

        token = jwt.encode(claims, material.key, algorithm=material.algorithm, headers=headers)
        return IssuedAccessToken(token=token, issued_at=issued_at, expires_at=expires_at, token_id=token_id)

    def verify_access_token(self, token: Optional[str]) -> AccessTokenClaims:
        """
        Decode and verify an access token

        Args:
            token: Compact JWT string

        Returns:
            AccessTokenClaims: Verified claims

        Raises:
            MissingTokenError: Empty input
            TokenExpiredError: Valid signature, past expiry
            InvalidTokenError: Bad signature, structure, issuer or audience
            TokenVerificationFailedError: Verified but missing required claims
        """
        if not token or not token.strip():
            raise MissingTokenError("Missing access token")

        material = self._verification_material()

        try:
            payload = jwt.decode(
                token,
                material.key,
                algorithms=[material.algorithm],
                audience=self._settings.JWT_AUD,
                issuer=self._settings.JWT_ISS,
                options={"leeway": self._settings.ACCESS_TOKEN_LEEWAY_SECONDS},
            )
        except ExpiredSignatureError:
            raise TokenExpiredError()
        except JWTError:
            raise InvalidTokenError()

        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: Dict[str, Any]) -> AccessTokenClaims:
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError("Token is not an access token")

        sub = payload.get("sub")
        iat = payload.get("iat")
        exp = payload.get("exp")
        jti = payload.get("jti")
        if not sub or not jti or not payload.get("iss") or not payload.get("aud"):
            raise TokenVerificationFailedError("Malformed access token")
        if not isinstance(iat, int) or not isinstance(exp, int):
            raise TokenVerificationFailedError("Malformed access token")
        if exp <= iat:
            raise TokenVerificationFailedError("Malformed access token")

        roles = payload.get("roles")
        if roles is None:
            roles = []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenVerificationFailedError("Malformed access token roles")

        return AccessTokenClaims(
            user_id=str(sub),
            issued_at=iat,
            expires_at=exp,
            token_id=str(jti),
            issuer=str(payload.get("iss")),
            audience=str(payload.get("aud")),
            roles=list(roles),
        )


access_token_codec = AccessTokenCodec()
