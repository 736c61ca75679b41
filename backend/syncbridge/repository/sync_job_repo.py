# sync_jobs / sync_job_items database repository

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from syncbridge.db.model.sync_job import (
    SyncJob, SyncJobItem,
    ACTIVE_STATES, ITEM_FAILED, ITEM_PENDING, ITEM_SUCCEEDED, STATE_FAILED, STATE_QUEUED, STATE_RUNNING, TERMINAL_STATES,
)
from syncbridge.utils.clock import now_utc


_COUNTERS = {"total", "completed", "failed", "skipped", "retries"}


# ---------- Job: Query ----------
def get(db: Session, job_id: str, *, fresh: bool = False) -> Optional[SyncJob]:
    """fresh=True 时绕过 identity map，读最新行（计数器被 SQL 自增过）。"""
    if fresh:
        return db.get(SyncJob, job_id, populate_existing=True)
    return db.get(SyncJob, job_id)


def get_active(db: Session, connection_id: str) -> Optional[SyncJob]:
    stmt = select(SyncJob).where(SyncJob.connection_id == connection_id, SyncJob.state.in_(ACTIVE_STATES))
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def get_latest(db: Session, connection_id: str) -> Optional[SyncJob]:
    stmt = (
        select(SyncJob)
        .where(SyncJob.connection_id == connection_id)
        .order_by(SyncJob.queued_at.desc(), SyncJob.attempt.desc())
        .limit(1)
    )
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def list_recent(db: Session, connection_id: str, limit: int) -> List[SyncJob]:
    stmt = (
        select(SyncJob)
        .where(SyncJob.connection_id == connection_id)
        .order_by(SyncJob.queued_at.desc(), SyncJob.attempt.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt.execution_options(populate_existing=True)))


def active_states_for(db: Session, connection_ids: Iterable[str]) -> Dict[str, str]:
    ids = list(connection_ids)
    if not ids:
        return {}
    stmt = select(SyncJob.connection_id, SyncJob.state).where(
        SyncJob.connection_id.in_(ids), SyncJob.state.in_(ACTIVE_STATES)
    )
    return {cid: state for cid, state in db.execute(stmt).all()}


def list_stale_active(db: Session, deadline: datetime) -> List[SyncJob]:
    """
    失活判定：
      - running：心跳（没有则 started_at）早于 deadline
      - queued：入队时间早于 deadline（派发丢失）
    """
    stmt = select(SyncJob).where(
        or_(
            and_(SyncJob.state == STATE_RUNNING, func.coalesce(SyncJob.heartbeat_at, SyncJob.started_at, SyncJob.queued_at) < deadline),
            and_(SyncJob.state == STATE_QUEUED, SyncJob.queued_at < deadline),
        )
    ).order_by(SyncJob.queued_at.asc())
    return list(db.scalars(stmt.execution_options(populate_existing=True)))


def list_retry_candidates(db: Session, ceiling: int, *, finished_before: Optional[datetime] = None) -> List[SyncJob]:
    stmt = select(SyncJob).where(
        SyncJob.state == STATE_FAILED,
        SyncJob.retryable.is_(True),
        SyncJob.cancel_requested.is_(False),
        SyncJob.retry_enqueued.is_(False),
        SyncJob.attempt < ceiling,
    )
    if finished_before is not None:
        stmt = stmt.where(SyncJob.finished_at <= finished_before)
    return list(db.scalars(stmt.order_by(SyncJob.finished_at.asc()).execution_options(populate_existing=True)))


# ---------- Job: Mutations ----------
def insert_queued(
    db: Session,
    connection_id: str,
    job_type: str,
    trigger: str,
    *,
    scope_skus: Optional[List[str]] = None,
    attempt: int = 1,
    retry_of_id: Optional[str] = None,
) -> SyncJob:
    """单飞索引冲突时 IntegrityError 原样抛出（已 rollback）。"""
    row = SyncJob(
        connection_id=connection_id,
        job_type=job_type,
        trigger=trigger,
        state=STATE_QUEUED,
        scope_skus=scope_skus,
        attempt=attempt,
        retry_of_id=retry_of_id,
        queued_at=now_utc(),
    )
    db.add(row)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return row


def claim(db: Session, job_id: str, now: Optional[datetime] = None) -> bool:
    """queued → running 的条件更新；rowcount==1 即抢到。"""
    now = now or now_utc()
    res = db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.state == STATE_QUEUED)
        .values(state=STATE_RUNNING, started_at=now, heartbeat_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def increment(db: Session, job_id: str, **deltas: int) -> None:
    """计数器原子自增：col = col + n。"""
    unknown = set(deltas) - _COUNTERS
    if unknown:
        raise ValueError(f"unknown counters: {sorted(unknown)}")
    values = {name: getattr(SyncJob, name) + int(n) for name, n in deltas.items() if n}
    if not values:
        return
    db.execute(
        update(SyncJob).where(SyncJob.id == job_id).values(**values).execution_options(synchronize_session=False)
    )
    db.commit()


def heartbeat(db: Session, job_id: str, now: Optional[datetime] = None) -> None:
    db.execute(
        update(SyncJob).where(SyncJob.id == job_id).values(heartbeat_at=now or now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def update_fields(db: Session, job_id: str, **fields: Any) -> None:
    db.execute(update(SyncJob).where(SyncJob.id == job_id).values(**fields).execution_options(synchronize_session=False))
    db.commit()


def finish(
    db: Session,
    job_id: str,
    state: str,
    *,
    now: Optional[datetime] = None,
    last_error: Optional[str] = None,
    retryable: Optional[bool] = None,
) -> int:
    """只对仍处于 queued/running 的 job 生效（终态不回退）。"""
    now = now or now_utc()
    job = get(db, job_id, fresh=True)
    if job is None:
        return 0
    values: Dict[str, Any] = {"state": state, "finished_at": now, "heartbeat_at": now}
    if job.started_at is not None:
        values["duration_seconds"] = round((now - job.started_at).total_seconds(), 3)
    if last_error is not None:
        values["last_error"] = last_error[:2000]
    if retryable is not None:
        values["retryable"] = retryable
    res = db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.state.in_(ACTIVE_STATES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def request_cancel(db: Session, connection_id: str) -> int:
    res = db.execute(
        update(SyncJob)
        .where(SyncJob.connection_id == connection_id, SyncJob.state.in_(ACTIVE_STATES))
        .values(cancel_requested=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def mark_retry_enqueued(db: Session, job_id: str) -> bool:
    """retry 只派生一次：条件更新抢占。"""
    res = db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.retry_enqueued.is_(False))
        .values(retry_enqueued=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


# ---------- Items ----------
def insert_items(db: Session, job_id: str, rows: Iterable[Dict[str, Any]]) -> int:
    """rows: {"position","sku","action","payload"}；不在这里 commit，和计划摘要一起提交。"""
    n = 0
    for r in rows:
        db.add(SyncJobItem(
            job_id=job_id,
            position=r["position"],
            sku=r["sku"],
            action=r["action"],
            payload=r.get("payload") or {},
            state=ITEM_PENDING,
            attempts=0,
        ))
        n += 1
    return n


def next_pending_item(db: Session, job_id: str) -> Optional[SyncJobItem]:
    stmt = (
        select(SyncJobItem)
        .where(SyncJobItem.job_id == job_id, SyncJobItem.state == ITEM_PENDING)
        .order_by(SyncJobItem.position.asc())
        .limit(1)
    )
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def update_item(db: Session, item_id: int, **fields: Any) -> None:
    fields.setdefault("updated_at", now_utc())
    db.execute(
        update(SyncJobItem).where(SyncJobItem.id == item_id).values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def list_items(db: Session, job_id: str, *, state: Optional[str] = None) -> List[SyncJobItem]:
    stmt = select(SyncJobItem).where(SyncJobItem.job_id == job_id)
    if state is not None:
        stmt = stmt.where(SyncJobItem.state == state)
    return list(db.scalars(stmt.order_by(SyncJobItem.position.asc()).execution_options(populate_existing=True)))


def settle_item(
    db: Session,
    job_id: str,
    item_id: int,
    state: str,
    *,
    attempts: int,
    last_error: Optional[str] = None,
) -> None:
    """item 落终态 + job 计数器自增，同一事务提交。"""
    if state not in (ITEM_SUCCEEDED, ITEM_FAILED):
        raise ValueError(f"not a terminal item state: {state}")
    counter = "completed" if state == ITEM_SUCCEEDED else "failed"
    db.execute(
        update(SyncJobItem).where(SyncJobItem.id == item_id)
        .values(state=state, attempts=attempts, next_attempt_at=None,
                last_error=(last_error or None) and last_error[:2000], updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(SyncJob).where(SyncJob.id == job_id)
        .values(**{counter: getattr(SyncJob, counter) + 1}, heartbeat_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def defer_item(
    db: Session,
    job_id: str,
    item_id: int,
    *,
    attempts: int,
    next_attempt_at: datetime,
    last_error: Optional[str] = None,
) -> None:
    """
    item 留在 pending，写下次尝试时间；job.retries + 1。
    heartbeat_at 顺延到 next_attempt_at（租约）：等长 Retry-After 期间 sweeper 不会判失活
    """
    now = now_utc()
    lease = max(now, next_attempt_at)
    db.execute(
        update(SyncJobItem).where(SyncJobItem.id == item_id)
        .values(attempts=attempts, next_attempt_at=next_attempt_at,
                last_error=(last_error or None) and last_error[:2000], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(SyncJob).where(SyncJob.id == job_id)
        .values(retries=SyncJob.retries + 1, heartbeat_at=lease)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def purge_items_before(db: Session, cutoff: datetime) -> int:
    """删掉 cutoff 之前已结束 job 的 items；job 行本身保留（history 要用）。"""
    finished = select(SyncJob.id).where(SyncJob.state.in_(TERMINAL_STATES), SyncJob.finished_at < cutoff)
    res = db.execute(
        delete(SyncJobItem).where(SyncJobItem.job_id.in_(finished)).execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount or 0


def defer_plan(db: Session, job_id: str, *, until: datetime, last_error: Optional[str] = None) -> None:
    """计划阶段的瞬时失败：retries + 1，心跳租约顺延到 until（下一次计划前不算失活）。"""
    values: Dict[str, Any] = {"retries": SyncJob.retries + 1, "heartbeat_at": max(now_utc(), until)}
    if last_error is not None:
        values["last_error"] = last_error[:2000]
    db.execute(update(SyncJob).where(SyncJob.id == job_id).values(**values).execution_options(synchronize_session=False))
    db.commit()
