# sync_logs database repository（只追加）

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from syncbridge.db.model.sync_log import SyncLogEntry, LEVELS
from syncbridge.utils.clock import now_utc


def append(
    db: Session,
    *,
    level: str,
    message: str,
    connection_id: Optional[str] = None,
    job_id: Optional[str] = None,
    shop_domain: Optional[str] = None,
    code: Optional[str] = None,
    sku: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> SyncLogEntry:
    if level not in LEVELS:
        raise ValueError(f"level must be one of {LEVELS}")
    row = SyncLogEntry(
        connection_id=connection_id,
        job_id=job_id,
        shop_domain=shop_domain,
        level=level,
        code=code,
        sku=sku,
        message=message[:4000],
        details=details,
        created_at=created_at or now_utc(),
    )
    db.add(row)
    db.commit()
    return row


def count_by_level(db: Session, connection_id: str, since: datetime) -> Dict[str, int]:
    stmt = (
        select(SyncLogEntry.level, func.count())
        .where(SyncLogEntry.connection_id == connection_id, SyncLogEntry.created_at >= since)
        .group_by(SyncLogEntry.level)
    )
    counts = {level: 0 for level in LEVELS}
    for level, n in db.execute(stmt).all():
        counts[level] = int(n)
    return counts


def count_codes(db: Session, connection_id: str, since: datetime, codes: Iterable[str]) -> int:
    stmt = select(func.count()).select_from(SyncLogEntry).where(
        SyncLogEntry.connection_id == connection_id,
        SyncLogEntry.created_at >= since,
        SyncLogEntry.code.in_(list(codes)),
    )
    return int(db.scalar(stmt) or 0)


def recent(
    db: Session,
    connection_id: str,
    *,
    since: Optional[datetime] = None,
    levels: Optional[Iterable[str]] = None,
    limit: int = 20,
) -> List[SyncLogEntry]:
    stmt = select(SyncLogEntry).where(SyncLogEntry.connection_id == connection_id)
    if since is not None:
        stmt = stmt.where(SyncLogEntry.created_at >= since)
    if levels is not None:
        stmt = stmt.where(SyncLogEntry.level.in_(list(levels)))
    stmt = stmt.order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit)
    return list(db.scalars(stmt))


def purge_before(db: Session, cutoff: datetime) -> int:
    res = db.execute(
        delete(SyncLogEntry).where(SyncLogEntry.created_at < cutoff).execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0
