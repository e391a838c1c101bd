"""Refresh token persistence model."""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Index, UniqueConstraint

from sessionguard.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class RefreshToken(Base):
    """Hashed refresh token record; one row per issued token."""

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=_new_id)
    token_hash = Column(String(128), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    family_id = Column(String(64), nullable=False, index=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    last_used_at = Column(DateTime, nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    # Successor id, set at rotation time. Not a foreign key: rows are purged independently.
    replaced_by = Column(String(36), nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    fingerprint = Column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_refresh_tokens_token_hash"),
        Index("idx_refresh_tokens_user_revoked", "user_id", "revoked"),
        Index("idx_refresh_tokens_family_revoked", "family_id", "revoked"),
    )

    def __repr__(self):
        return (
            f"<RefreshToken(id='{self.id}', user_id='{self.user_id}', "
            f"family_id='{self.family_id}', revoked={self.revoked})>"
        )
