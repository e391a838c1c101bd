"""Aggregate refresh-token rows into per-family session summaries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from sessionguard.models.refresh_token import RefreshToken


@dataclass(frozen=True)
class SessionSummary:
    """One login lineage (token family) as shown to its owner."""

    family_id: str
    created_at: datetime
    last_used_at: datetime
    active: bool
    token_count: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    """Bound a caller-supplied page size to [1, maximum]."""
    if limit is None:
        limit = default
    return max(1, min(int(limit), maximum))


def _latest_devices(
    db: Session, user_id: str, family_ids: List[str]
) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
    newest = (
        select(
            RefreshToken.family_id.label("family_id"),
            func.max(RefreshToken.issued_at).label("issued_at"),
        )
        .where(RefreshToken.user_id == user_id, RefreshToken.family_id.in_(family_ids))
        .group_by(RefreshToken.family_id)
        .subquery()
    )
    rows = db.execute(
        select(RefreshToken.family_id, RefreshToken.ip_address, RefreshToken.user_agent)
        .join(
            newest,
            and_(
                RefreshToken.family_id == newest.c.family_id,
                RefreshToken.issued_at == newest.c.issued_at,
            ),
        )
        .where(RefreshToken.user_id == user_id)
        .order_by(RefreshToken.id)
    ).all()

    devices: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
    for family_id, ip_address, user_agent in rows:
        devices.setdefault(family_id, (ip_address, user_agent))
    return devices


def query_user_sessions(
    db: Session,
    user_id: str,
    *,
    now: datetime,
    limit: int,
    include_revoked: bool = False,
) -> List[SessionSummary]:
    """
    Group a user's refresh tokens by family inside the database.

    Args:
        db: Open session
        user_id: Owning subject
        now: Reference time for the active flag
        limit: Maximum number of sessions returned
        include_revoked: Keep families with no active token

    Returns:
        List[SessionSummary]: Most recently used session first. Device metadata
        comes from the newest token in each family.
    """
    used_at = func.coalesce(RefreshToken.last_used_at, RefreshToken.issued_at)
    live = case(
        (and_(RefreshToken.revoked.is_(False), RefreshToken.expires_at > now), 1),
        else_=0,
    )
    last_used_at = func.max(used_at).label("last_used_at")
    live_count = func.sum(live)

    stmt = (
        select(
            RefreshToken.family_id,
            func.min(RefreshToken.issued_at).label("created_at"),
            last_used_at,
            func.count(RefreshToken.id).label("token_count"),
            live_count.label("live_count"),
        )
        .where(RefreshToken.user_id == user_id)
        .group_by(RefreshToken.family_id)
        .order_by(func.max(used_at).desc(), RefreshToken.family_id.desc())
        .limit(limit)
    )
    if not include_revoked:
        stmt = stmt.having(live_count > 0)

    rows = db.execute(stmt).all()
    if not rows:
        return []

    devices = _latest_devices(db, user_id, [row.family_id for row in rows])
    summaries = []
    for row in rows:
        ip_address, user_agent = devices.get(row.family_id, (None, None))
        summaries.append(
            SessionSummary(
                family_id=row.family_id,
                created_at=row.created_at,
                last_used_at=row.last_used_at,
                active=(row.live_count or 0) > 0,
                token_count=row.token_count,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
    return summaries
