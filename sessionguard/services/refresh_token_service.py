"""Refresh token issuance, rotation and revocation service."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, NoReturn, Optional, Tuple
import hashlib
import hmac
import logging
import secrets
import uuid

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, NotSupportedError, SQLAlchemyError
from sqlalchemy.orm import Session

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.database import READ_ONLY_TRANSACTION
from sessionguard.core.exceptions import (
    BaseAPIException,
    ConfigurationError,
    InternalError,
    InvalidArgumentError,
    InvalidOrReusedTokenError,
    MissingTokenError,
    TokenIssuanceFailedError,
    TransactionFailedError,
)
from sessionguard.core.metrics import (
    REFRESH_BEST_EFFORT_ROTATIONS,
    REFRESH_REUSE_DETECTED,
    REFRESH_ROTATION_INCONSISTENCIES,
    REFRESH_ROTATIONS,
    REFRESH_TOKEN_COLLISIONS,
    REFRESH_TOKENS_REVOKED,
)
from sessionguard.models.refresh_token import RefreshToken
from sessionguard.services.session_summary import SessionSummary, clamp_limit, query_user_sessions

logger = logging.getLogger(__name__)

TokenGenerator = Callable[[], str]
SessionFactory = Callable[[], Session]


@dataclass(frozen=True)
class IssuedRefreshToken:
    """Raw refresh token handed to the client exactly once."""

    token: str
    token_id: str
    user_id: str
    family_id: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenView:
    """Stored refresh token without its hash."""

    id: str
    user_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime]
    revoked: bool
    revoked_at: Optional[datetime]
    replaced_by: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    fingerprint: Optional[str]

    @classmethod
    def from_record(cls, record: RefreshToken) -> "RefreshTokenView":
        return cls(
            id=record.id,
            user_id=record.user_id,
            family_id=record.family_id,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            last_used_at=record.last_used_at,
            revoked=record.revoked,
            revoked_at=record.revoked_at,
            replaced_by=record.replaced_by,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            fingerprint=record.fingerprint,
        )


class _TransactionsUnsupported(Exception):
    """The store refused to open a multi-statement transaction."""


def _naive_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class RefreshTokenService:
    """Manage refresh-token family lifecycle against an injected session factory."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        hash_secret: Optional[str] = None,
        token_generator: Optional[TokenGenerator] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self._settings = config or default_settings
        secret = hash_secret if hash_secret is not None else self._settings.REFRESH_HASH_SECRET
        if not secret or len(secret) < 32:
            raise ConfigurationError("REFRESH_HASH_SECRET missing or weak")
        self._hash_key = secret.encode("utf-8")
        self._session_factory = session_factory
        self._token_generator = token_generator or self._generate_token

    def _generate_token(self) -> str:
        return secrets.token_urlsafe(self._settings.REFRESH_TOKEN_BYTES)

    def hash_token(self, raw: str) -> str:
        """Keyed one-way hash of a raw refresh token."""
        return hmac.new(self._hash_key, raw.encode("utf-8"), hashlib.sha256).hexdigest()

    def _expiry(self, now: datetime, expires_delta: Optional[timedelta]) -> datetime:
        if expires_delta is None:
            seconds = self._settings.REFRESH_TOKEN_TTL_SECONDS
        else:
            seconds = int(expires_delta.total_seconds())
        if seconds <= 0:
            raise InvalidArgumentError("Refresh token lifetime must be positive")
        seconds = min(seconds, self._settings.REFRESH_TOKEN_MAX_TTL_SECONDS)
        return now + timedelta(seconds=seconds)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _abort(db: Session, cause: BaseException) -> None:
        try:
            db.rollback()
        except SQLAlchemyError as rollback_exc:
            logger.warning(
                "Rollback after %s failed: %s", type(cause).__name__, rollback_exc
            )

    @contextmanager
    def _transaction(self, operation: str, *, read_only: bool = False) -> Iterator[Session]:
        db = self._session_factory()
        try:
            if read_only:
                db.connection(execution_options={READ_ONLY_TRANSACTION: True})
            yield db
            db.commit()
        except BaseAPIException as exc:
            self._abort(db, exc)
            raise
        except SQLAlchemyError as exc:
            self._abort(db, exc)
            logger.exception("Refresh token store failure during %s", operation)
            raise InternalError("Refresh token store failure") from exc
        finally:
            db.close()

    @staticmethod
    def _hash_exists(db: Session, token_hash: str) -> bool:
        stmt = select(RefreshToken.id).where(RefreshToken.token_hash == token_hash)
        return db.execute(stmt).first() is not None

    def _insert_with_retry(
        self,
        db: Session,
        *,
        user_id: str,
        family_id: str,
        now: datetime,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        fingerprint: Optional[str],
    ) -> Tuple[str, RefreshToken]:
        max_attempts = self._settings.TOKEN_ISSUE_MAX_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            raw = self._token_generator()
            token_hash = self.hash_token(raw)
            record = RefreshToken(
                id=str(uuid.uuid4()),
                token_hash=token_hash,
                user_id=user_id,
                family_id=family_id,
                issued_at=now,
                expires_at=expires_at,
                revoked=False,
                ip_address=ip_address,
                user_agent=user_agent,
                fingerprint=fingerprint,
            )
            try:
                with db.begin_nested():
                    db.add(record)
            except IntegrityError as exc:
                if not self._hash_exists(db, token_hash):
                    raise InternalError("Failed to persist refresh token") from exc
                REFRESH_TOKEN_COLLISIONS.inc()
                logger.warning(
                    "Refresh token hash collision for family %s (attempt %d/%d)",
                    family_id,
                    attempt,
                    max_attempts,
                )
                continue
            return raw, record

        raise TokenIssuanceFailedError(
            f"Failed to issue refresh token after {max_attempts} attempts"
        )

    @staticmethod
    def _revoke_where(db: Session, *criteria, now: datetime) -> int:
        result = db.execute(
            update(RefreshToken)
            .where(*criteria, RefreshToken.revoked.is_(False))
            .values(revoked=True, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    @staticmethod
    def _swap(db: Session, token_hash: str, now: datetime) -> Optional[RefreshToken]:
        """Revoke the presented token if, and only if, it is still live."""
        result = db.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == token_hash,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .values(revoked=True, revoked_at=now, last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        return db.execute(stmt).scalar_one()

    def _reject_failed_swap(self, db: Session, token_hash: str, now: datetime) -> NoReturn:
        """
        Handle a presented token that could not be swapped.

        Unknown hashes are rejected as garbage. A known hash is a replay: the
        whole family is revoked and committed before rejecting. The one exception
        is the loser of a concurrent rotation: the token was rotated at or after
        the moment this request started (plus REFRESH_REUSE_GRACE_SECONDS), so
        only this request is refused.
        """
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        existing = db.execute(stmt).scalar_one_or_none()
        if existing is None:
            db.rollback()
            REFRESH_ROTATIONS.labels("invalid").inc()
            raise InvalidOrReusedTokenError()

        grace = timedelta(seconds=self._settings.REFRESH_REUSE_GRACE_SECONDS)
        if (
            existing.replaced_by is not None
            and existing.last_used_at is not None
            and now <= existing.last_used_at + grace
        ):
            db.rollback()
            REFRESH_ROTATIONS.labels("race").inc()
            logger.info(
                "Concurrent rotation of token %s in family %s refused",
                existing.id,
                existing.family_id,
            )
            raise InvalidOrReusedTokenError()

        family_id = existing.family_id
        user_id = existing.user_id
        revoked = self._revoke_where(db, RefreshToken.family_id == family_id, now=now)
        db.commit()

        REFRESH_ROTATIONS.labels("reused").inc()
        REFRESH_REUSE_DETECTED.inc()
        REFRESH_TOKENS_REVOKED.labels("reuse").inc(revoked)
        logger.warning(
            "Refresh token reuse detected for user %s: family %s revoked (%d live tokens)",
            user_id,
            family_id,
            revoked,
        )
        raise InvalidOrReusedTokenError()

    def _prune_family(self, db: Session, family_id: str, now: datetime) -> None:
        # Unexpired revoked rows stay: their hashes are what detects a replay.
        max_size = self._settings.MAX_REFRESH_TOKEN_FAMILY_SIZE
        if max_size <= 0:
            return
        beyond_cap = db.execute(
            select(RefreshToken.id, RefreshToken.expires_at)
            .where(RefreshToken.family_id == family_id, RefreshToken.revoked.is_(True))
            .order_by(RefreshToken.issued_at.desc(), RefreshToken.id)
            .offset(max(max_size - 1, 0))
        ).all()
        stale_ids = [token_id for token_id, expires_at in beyond_cap if expires_at <= now]
        if stale_ids:
            db.execute(
                delete(RefreshToken)
                .where(RefreshToken.id.in_(stale_ids))
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        *,
        family_id: Optional[str] = None,
        expires_delta: Optional[timedelta] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IssuedRefreshToken:
        """
        Issue a refresh token, starting a new family when none is given.

        Args:
            user_id: Owning subject
            family_id: Existing lineage to extend, or None for a new session
            expires_delta: Lifetime, defaults to REFRESH_TOKEN_TTL_SECONDS
            ip_address: Client address at issuance
            user_agent: Client user agent at issuance
            fingerprint: Client device fingerprint
            now: Issue time override

        Returns:
            IssuedRefreshToken: The raw token; it cannot be recovered later

        Raises:
            InvalidArgumentError: Missing user or non-positive lifetime
            TokenIssuanceFailedError: Hash collisions exhausted the retry budget
            InternalError: Unrecognised persistence failure
        """
        if not user_id:
            raise InvalidArgumentError("user_id is required")
        if family_id is not None and not family_id.strip():
            raise InvalidArgumentError("family_id must not be blank")

        now = _naive_utc(now)
        expires_at = self._expiry(now, expires_delta)
        family_id = family_id or str(uuid.uuid4())

        with self._transaction("create") as db:
            raw, record = self._insert_with_retry(
                db,
                user_id=str(user_id),
                family_id=family_id,
                now=now,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                fingerprint=fingerprint,
            )
            token_id = record.id

        return IssuedRefreshToken(
            token=raw,
            token_id=token_id,
            user_id=str(user_id),
            family_id=family_id,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate_refresh_token(
        self,
        token: Optional[str],
        *,
        expires_delta: Optional[timedelta] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IssuedRefreshToken:
        """
        Consume a refresh token and issue its successor in the same family.

        Args:
            token: Raw refresh token presented by the client
            expires_delta: Successor lifetime
            ip_address: Client address of this request
            user_agent: Client user agent of this request
            now: Rotation time override

        Returns:
            IssuedRefreshToken: The successor raw token

        Raises:
            MissingTokenError: Empty input
            InvalidOrReusedTokenError: Unknown, expired, revoked or replayed token
            TokenIssuanceFailedError: Hash collisions exhausted the retry budget
            TransactionFailedError: Store failure; nothing was changed, safe to retry
        """
        if not token:
            raise MissingTokenError("Missing refresh token")

        now = _naive_utc(now)
        expires_at = self._expiry(now, expires_delta)
        token_hash = self.hash_token(token)
        mode = self._settings.ROTATION_MODE

        if mode == "best_effort":
            return self._rotate_best_effort(token_hash, now, expires_at, ip_address, user_agent)

        try:
            return self._rotate_transactional(token_hash, now, expires_at, ip_address, user_agent)
        except _TransactionsUnsupported:
            if mode != "auto":
                REFRESH_ROTATIONS.labels("failed").inc()
                raise TransactionFailedError("Store does not support transactions")
            REFRESH_BEST_EFFORT_ROTATIONS.inc()
            logger.warning(
                "Transactions unsupported by the refresh token store; "
                "falling back to best-effort rotation (reduced safety)"
            )
            return self._rotate_best_effort(token_hash, now, expires_at, ip_address, user_agent)

    def _rotate_transactional(
        self,
        token_hash: str,
        now: datetime,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedRefreshToken:
        db = self._session_factory()
        try:
            old = self._swap(db, token_hash, now)
            if old is None:
                self._reject_failed_swap(db, token_hash, now)

            old_id, user_id = old.id, old.user_id
            family_id, fingerprint = old.family_id, old.fingerprint
            raw, successor = self._insert_with_retry(
                db,
                user_id=user_id,
                family_id=family_id,
                now=now,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                fingerprint=fingerprint,
            )
            successor_id = successor.id
            db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == old_id)
                .values(replaced_by=successor_id)
                .execution_options(synchronize_session=False)
            )
            self._prune_family(db, family_id, now)
            db.commit()
        except InvalidOrReusedTokenError:
            raise
        except NotSupportedError as exc:
            self._abort(db, exc)
            raise _TransactionsUnsupported() from exc
        except BaseAPIException as exc:
            self._abort(db, exc)
            REFRESH_ROTATIONS.labels("failed").inc()
            raise
        except Exception as exc:
            self._abort(db, exc)
            REFRESH_ROTATIONS.labels("failed").inc()
            logger.exception("Refresh rotation aborted; presented token left untouched")
            raise TransactionFailedError() from exc
        finally:
            db.close()

        REFRESH_ROTATIONS.labels("success").inc()
        return IssuedRefreshToken(
            token=raw,
            token_id=successor_id,
            user_id=user_id,
            family_id=family_id,
            expires_at=expires_at,
        )

    def _rotate_best_effort(
        self,
        token_hash: str,
        now: datetime,
        expires_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedRefreshToken:
        db = self._session_factory()
        try:
            old = self._swap(db, token_hash, now)
            if old is None:
                self._reject_failed_swap(db, token_hash, now)
            old_id, user_id = old.id, old.user_id
            family_id, fingerprint = old.family_id, old.fingerprint
            db.commit()
        except InvalidOrReusedTokenError:
            raise
        except BaseAPIException as exc:
            self._abort(db, exc)
            REFRESH_ROTATIONS.labels("failed").inc()
            raise
        except Exception as exc:
            self._abort(db, exc)
            REFRESH_ROTATIONS.labels("failed").inc()
            logger.exception("Best-effort rotation failed before revoking the presented token")
            raise TransactionFailedError() from exc
        finally:
            db.close()

        # Presented token is committed as revoked from here on; revocation is one-way.
        db = self._session_factory()
        try:
            raw, successor = self._insert_with_retry(
                db,
                user_id=user_id,
                family_id=family_id,
                now=now,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
                fingerprint=fingerprint,
            )
            successor_id = successor.id
            db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == old_id)
                .values(replaced_by=successor_id)
                .execution_options(synchronize_session=False)
            )
            self._prune_family(db, family_id, now)
            db.commit()
        except Exception as exc:
            self._abort(db, exc)
            REFRESH_ROTATIONS.labels("failed").inc()
            REFRESH_ROTATION_INCONSISTENCIES.inc()
            logger.error(
                "Best-effort rotation revoked token %s of family %s (user %s) "
                "without a committed successor: %s",
                old_id,
                family_id,
                user_id,
                exc,
            )
            if isinstance(exc, BaseAPIException):
                raise
            raise TransactionFailedError() from exc
        finally:
            db.close()

        REFRESH_ROTATIONS.labels("success").inc()
        return IssuedRefreshToken(
            token=raw,
            token_id=successor_id,
            user_id=user_id,
            family_id=family_id,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_refresh_token(
        self,
        *,
        token_id: Optional[str] = None,
        family_id: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Revoke every live token matching the selector.

        Selector fields combine with AND. Already-revoked tokens are skipped,
        so repeating a call returns 0.

        Returns:
            int: Number of tokens revoked by this call

        Raises:
            InvalidArgumentError: No selector field supplied
        """
        criteria = []
        if token_id:
            criteria.append(RefreshToken.id == token_id)
        if family_id:
            criteria.append(RefreshToken.family_id == family_id)
        if user_id:
            criteria.append(RefreshToken.user_id == str(user_id))
        if not criteria:
            raise InvalidArgumentError("Must provide token_id, family_id, or user_id")

        now = _naive_utc(now)
        with self._transaction("revoke") as db:
            revoked = self._revoke_where(db, *criteria, now=now)

        REFRESH_TOKENS_REVOKED.labels("request").inc(revoked)
        return revoked

    def revoke_by_token(self, token: Optional[str], *, now: Optional[datetime] = None) -> int:
        """
        Revoke the family of a presented raw token (logout).

        Unknown tokens revoke nothing and return 0.
        """
        if not token:
            raise MissingTokenError("Missing refresh token")

        token_hash = self.hash_token(token)
        with self._transaction("lookup", read_only=True) as db:
            family_id = db.execute(
                select(RefreshToken.family_id).where(RefreshToken.token_hash == token_hash)
            ).scalar_one_or_none()

        if family_id is None:
            return 0
        return self.revoke_refresh_token(family_id=family_id, now=now)

    # ------------------------------------------------------------------
    # Reads and housekeeping
    # ------------------------------------------------------------------

    def get_refresh_by_id(self, token_id: str) -> Optional[RefreshTokenView]:
        """Stored token by id, None when absent."""
        if not token_id:
            raise InvalidArgumentError("token_id is required")
        with self._transaction("get", read_only=True) as db:
            record = db.get(RefreshToken, token_id)
            return RefreshTokenView.from_record(record) if record is not None else None

    def list_user_sessions(
        self,
        user_id: str,
        *,
        include_revoked: bool = False,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[SessionSummary]:
        """
        Summarize a user's sessions, one per token family.

        Args:
            user_id: Owning subject
            include_revoked: Also return families with no live token
            limit: Page size, clamped to [1, SESSION_LIST_MAX_LIMIT]
            now: Reference time for the active flag

        Returns:
            List[SessionSummary]: Most recently used first
        """
        if not user_id:
            raise InvalidArgumentError("user_id is required")

        now = _naive_utc(now)
        limit = clamp_limit(
            limit,
            self._settings.SESSION_LIST_DEFAULT_LIMIT,
            self._settings.SESSION_LIST_MAX_LIMIT,
        )
        with self._transaction("list_sessions", read_only=True) as db:
            return query_user_sessions(
                db,
                str(user_id),
                now=now,
                limit=limit,
                include_revoked=include_revoked,
            )

    def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        """Delete rows whose expiry has passed. Returns the number deleted."""
        now = _naive_utc(now)
        with self._transaction("purge") as db:
            result = db.execute(
                delete(RefreshToken)
                .where(RefreshToken.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %d expired refresh tokens", purged)
        return purged
