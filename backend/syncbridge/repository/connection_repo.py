# connections database repository

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from syncbridge.db.model.connection import Connection, STATUS_ACTIVE, STATUS_DISABLED
from syncbridge.db.model.sync_job import SyncJob, SyncJobItem, ITEM_SUCCEEDED
from syncbridge.db.model.sync_log import SyncLogEntry
from syncbridge.utils.clock import now_utc


_UPDATABLE = {
    "name", "dest_key", "dest_shop_domain", "dest_access_token", "base_url", "consumer_key",
    "consumer_secret", "dest_location_id", "status", "disabled_reason", "sync_price",
    "sync_categories", "sync_tags", "sync_collections", "create_missing", "publish_new",
    "mapping_rules", "delete_requested_at", "last_synced_at",
}


# ---------- Query ----------
def get(db: Session, connection_id: str) -> Optional[Connection]:
    return db.get(Connection, connection_id, populate_existing=True)


def get_for_installation(db: Session, installation_id: str, connection_id: str) -> Optional[Connection]:
    stmt = select(Connection).where(Connection.id == connection_id, Connection.installation_id == installation_id)
    return db.scalars(stmt).first()


def list_for_installation(db: Session, installation_id: str) -> List[Connection]:
    stmt = (
        select(Connection)
        .where(Connection.installation_id == installation_id)
        .order_by(Connection.created_at.asc(), Connection.id.asc())
    )
    return list(db.scalars(stmt))


def list_active(db: Session) -> List[Connection]:
    stmt = select(Connection).where(Connection.status == STATUS_ACTIVE).order_by(Connection.created_at.asc())
    return list(db.scalars(stmt))


def find_duplicate(
    db: Session, installation_id: str, platform: str, dest_key: str, *, exclude_id: Optional[str] = None
) -> Optional[Connection]:
    stmt = select(Connection).where(
        Connection.installation_id == installation_id,
        Connection.platform == platform,
        Connection.dest_key == dest_key,
    )
    if exclude_id:
        stmt = stmt.where(Connection.id != exclude_id)
    return db.scalars(stmt).first()


def synced_item_counts(db: Session, connection_ids: Iterable[str]) -> Dict[str, int]:
    """每个 connection 成功同步过的不同 SKU 数。"""
    ids = list(connection_ids)
    if not ids:
        return {}
    stmt = (
        select(SyncJob.connection_id, func.count(func.distinct(SyncJobItem.sku)))
        .join(SyncJobItem, SyncJobItem.job_id == SyncJob.id)
        .where(SyncJob.connection_id.in_(ids), SyncJobItem.state == ITEM_SUCCEEDED)
        .group_by(SyncJob.connection_id)
    )
    return {cid: int(n) for cid, n in db.execute(stmt).all()}


# ---------- Mutations ----------
def insert(db: Session, **fields: Any) -> Connection:
    """IntegrityError（唯一约束）原样抛出，由 service 转成 AlreadyExists。"""
    row = Connection(**fields)
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def update_fields(db: Session, connection_id: str, **fields: Any) -> Optional[Connection]:
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")
    row = get(db, connection_id)
    if row is None:
        return None
    for k, v in fields.items():
        setattr(row, k, v)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def set_status(
    db: Session,
    connection_id: str,
    status: str,
    *,
    disabled_reason: Optional[str] = None,
    only_if_status: Optional[str] = None,
) -> int:
    stmt = (
        update(Connection)
        .where(Connection.id == connection_id)
        .values(status=status, disabled_reason=disabled_reason, updated_at=now_utc())
    )
    if only_if_status is not None:
        stmt = stmt.where(Connection.status == only_if_status)
    res = db.execute(stmt)
    db.commit()
    return res.rowcount or 0


def disable_for_installation(db: Session, installation_id: str, reason: str) -> int:
    res = db.execute(
        update(Connection)
        .where(Connection.installation_id == installation_id, Connection.status != STATUS_DISABLED)
        .values(status=STATUS_DISABLED, disabled_reason=reason, updated_at=now_utc())
    )
    db.commit()
    return res.rowcount or 0


def reactivate_disabled(db: Session, *, reason: str, installation_id: Optional[str] = None, connection_id: Optional[str] = None) -> int:
    """只恢复因指定原因被 disabled 的 connection。"""
    stmt = (
        update(Connection)
        .where(Connection.status == STATUS_DISABLED, Connection.disabled_reason == reason)
        .values(status=STATUS_ACTIVE, disabled_reason=None, updated_at=now_utc())
    )
    if installation_id is not None:
        stmt = stmt.where(Connection.installation_id == installation_id)
    if connection_id is not None:
        stmt = stmt.where(Connection.id == connection_id)
    res = db.execute(stmt)
    db.commit()
    return res.rowcount or 0


def delete_cascade(db: Session, connection_id: str) -> bool:
    """显式删除 job items → jobs → logs → connection（SQLite 不强制外键级联）。"""
    job_ids = select(SyncJob.id).where(SyncJob.connection_id == connection_id)
    db.execute(delete(SyncJobItem).where(SyncJobItem.job_id.in_(job_ids)))
    db.execute(delete(SyncJob).where(SyncJob.connection_id == connection_id))
    db.execute(delete(SyncLogEntry).where(SyncLogEntry.connection_id == connection_id))
    res = db.execute(delete(Connection).where(Connection.id == connection_id))
    db.commit()
    return bool(res.rowcount)
