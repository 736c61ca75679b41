"""
Job 调度：入队（单飞）/ 暂停 / 恢复 / 删除 / 扫表重试
  - 单飞靠 sync_jobs 的部分唯一索引（state in queued/running），预检只为了更好的报错
  - 派发：Celery apply_async，或 SYNC_TASKS_INLINE 时在当前进程跑完
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.connection import STATUS_ACTIVE, STATUS_DISABLED, STATUS_PAUSED
from syncbridge.db.model.sync_job import (
    SyncJob, JOB_INCREMENTAL, JOB_TYPES, STATE_FAILED, STATE_RUNNING, TRIGGER_RETRY,
)
from syncbridge.repository import connection_repo, installation_repo, sync_job_repo
from syncbridge.services import sync_log
from syncbridge.services.errors import (
    AlreadyRunning, ConnectionDisabled, ConnectionPaused, JobRunning, NeedsReinstall,
    NotFoundError, SyncBridgeError, ValidationError,
)
from syncbridge.utils.clock import now_utc


logger = logging.getLogger(__name__)

Dispatcher = Callable[[str], None]

LIVENESS_ERROR = "liveness deadline exceeded"


# ---------- 派发 ----------
def dispatch_job(job_id: str) -> None:
    """默认派发：Celery；调试开关打开时同进程执行。"""
    from syncbridge.core.celery_app import celery_app  # noqa: F401  shared_task 绑定到带 broker 配置的 app
    from syncbridge.orchestration.connection_sync import sync_task

    if settings.SYNC_TASKS_INLINE:
        sync_task.run_sync_job_inline(job_id)
    else:
        sync_task.run_sync_job.apply_async(args=[job_id])


# ---------- 入队 ----------
def enqueue(
    db: Session,
    connection_id: str,
    job_type: str,
    trigger: str,
    *,
    scope_skus: Optional[Iterable[str]] = None,
    attempt: int = 1,
    retry_of_id: Optional[str] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> SyncJob:
    if job_type not in JOB_TYPES:
        raise ValidationError(f"job_type must be one of {JOB_TYPES}")

    conn = connection_repo.get(db, connection_id)
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")
    if conn.delete_requested_at is not None:
        raise NotFoundError(f"connection {connection_id} is being deleted")
    if conn.status == STATUS_PAUSED:
        raise ConnectionPaused(f"connection {connection_id} is paused")
    if conn.status == STATUS_DISABLED:
        raise ConnectionDisabled(f"connection {connection_id} is disabled ({conn.disabled_reason})")

    installation = installation_repo.get(db, conn.installation_id)
    if installation is None or not installation.access_token:
        raise NeedsReinstall("source store must be re-installed before syncing")

    skus: Optional[List[str]] = None
    if job_type == JOB_INCREMENTAL:
        skus = sorted({s.strip() for s in (scope_skus or []) if s and s.strip()})
        if not skus:
            raise ValidationError("incremental sync needs at least one sku")

    if sync_job_repo.get_active(db, connection_id) is not None:
        raise AlreadyRunning(f"connection {connection_id} already has an active sync job")
    try:
        job = sync_job_repo.insert_queued(
            db, connection_id, job_type, trigger,
            scope_skus=skus, attempt=attempt, retry_of_id=retry_of_id,
        )
    except IntegrityError as e:
        raise AlreadyRunning(f"connection {connection_id} already has an active sync job") from e

    logger.info(
        "job.enqueued job=%s connection=%s type=%s trigger=%s attempt=%s",
        job.id, connection_id, job_type, trigger, attempt,
    )
    (dispatcher or dispatch_job)(job.id)
    return job


# ---------- 暂停 / 恢复 ----------
def pause(db: Session, connection_id: str) -> str:
    """幂等；正在跑的 job 收到取消请求，在下一个 item 边界停下。"""
    conn = connection_repo.get(db, connection_id)
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")
    if conn.status == STATUS_ACTIVE:
        connection_repo.set_status(db, connection_id, STATUS_PAUSED, only_if_status=STATUS_ACTIVE)
        logger.info("connection.paused id=%s", connection_id)
    cancelled = sync_job_repo.request_cancel(db, connection_id)
    if cancelled:
        logger.info("connection.pause.cancel_requested id=%s jobs=%s", connection_id, cancelled)
    conn = connection_repo.get(db, connection_id)
    return conn.status if conn else STATUS_PAUSED


def resume(db: Session, connection_id: str) -> str:
    """幂等；disabled 不会被恢复（需要重新授权/更新凭证）。"""
    conn = connection_repo.get(db, connection_id)
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")
    if conn.status == STATUS_DISABLED:
        raise ConnectionDisabled(f"connection {connection_id} is disabled ({conn.disabled_reason})")
    if conn.status == STATUS_PAUSED:
        connection_repo.set_status(db, connection_id, STATUS_ACTIVE, only_if_status=STATUS_PAUSED)
        logger.info("connection.resumed id=%s", connection_id)
    conn = connection_repo.get(db, connection_id)
    return conn.status if conn else STATUS_ACTIVE


# ---------- 删除 ----------
@dataclass(slots=True)
class DeleteResult:
    deleted: bool            # 已删除
    pending: bool = False    # 等运行中的 job 停下后删除


def delete_connection(db: Session, connection_id: str, cancel_running: bool = False) -> DeleteResult:
    conn = connection_repo.get(db, connection_id)
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")

    active = sync_job_repo.get_active(db, connection_id)
    if active is not None and active.state == STATE_RUNNING:
        if not cancel_running:
            raise JobRunning(f"connection {connection_id} has a running sync job; pass cancel_running=true")
        sync_job_repo.request_cancel(db, connection_id)
        connection_repo.update_fields(db, connection_id, delete_requested_at=now_utc())
        logger.info("connection.delete.pending id=%s job=%s", connection_id, active.id)
        return DeleteResult(deleted=False, pending=True)

    if active is not None:
        # 只是 queued：直接结束掉，避免 worker 再捡起
        sync_job_repo.finish(db, active.id, STATE_FAILED, last_error="connection deleted", retryable=False)
    connection_repo.delete_cascade(db, connection_id)
    logger.info("connection.deleted id=%s", connection_id)
    return DeleteResult(deleted=True)


# ---------- 扫表 ----------
"""
  sweep_jobs：由 beat 定时调用
    1) 失活：running 心跳 / queued 入队时间超过 deadline → failed("liveness deadline exceeded")
       再补一个 retry job，attempt 直接置为上限，即最多再跑一次
    2) 失败重试：可重试、未取消、attempt < 上限、结束超过 retry delay 的 failed job → attempt + 1
"""
def sweep_jobs(
    db: Session,
    now: Optional[datetime] = None,
    *,
    dispatcher: Optional[Dispatcher] = None,
) -> Dict[str, int]:
    now = now or now_utc()
    ceiling = settings.SYNC_JOB_RETRY_CEILING
    stats = {"stale": 0, "retried": 0, "skipped": 0}

    deadline = now - timedelta(seconds=settings.SYNC_LIVENESS_DEADLINE_SEC)
    for job in sync_job_repo.list_stale_active(db, deadline):
        if not sync_job_repo.finish(db, job.id, STATE_FAILED, now=now, last_error=LIVENESS_ERROR, retryable=True):
            continue
        stats["stale"] += 1
        sync_log.error(
            db, f"sync job {job.id} stopped reporting progress; {LIVENESS_ERROR}",
            code="job_stale", connection_id=job.connection_id, job_id=job.id,
        )
        if job.cancel_requested:
            _delete_if_requested(db, job.connection_id)
            continue
        if job.attempt > ceiling or not sync_job_repo.mark_retry_enqueued(db, job.id):
            continue
        if _retry(db, job, max(job.attempt + 1, ceiling), dispatcher):
            stats["retried"] += 1
        else:
            stats["skipped"] += 1

    finished_before = now - timedelta(seconds=settings.SYNC_JOB_RETRY_DELAY_SEC)
    for job in sync_job_repo.list_retry_candidates(db, ceiling, finished_before=finished_before):
        if not sync_job_repo.mark_retry_enqueued(db, job.id):
            continue
        if _retry(db, job, job.attempt + 1, dispatcher):
            stats["retried"] += 1
        else:
            stats["skipped"] += 1

    if any(stats.values()):
        logger.info("sweep.done stale=%s retried=%s skipped=%s", stats["stale"], stats["retried"], stats["skipped"])
    return stats


def _retry(db: Session, job: SyncJob, attempt: int, dispatcher: Optional[Dispatcher]) -> bool:
    try:
        new_job = enqueue(
            db, job.connection_id, job.job_type, TRIGGER_RETRY,
            scope_skus=job.scope_skus, attempt=attempt, retry_of_id=job.id, dispatcher=dispatcher,
        )
    except SyncBridgeError as e:
        # 暂停/禁用/已有 job：本次不补
        logger.info("sweep.retry.skipped job=%s connection=%s reason=%s", job.id, job.connection_id, e.code)
        return False
    logger.info("sweep.retry job=%s new_job=%s attempt=%s", job.id, new_job.id, attempt)
    return True


def _delete_if_requested(db: Session, connection_id: str) -> None:
    conn = connection_repo.get(db, connection_id)
    if conn is not None and conn.delete_requested_at is not None:
        connection_repo.delete_cascade(db, connection_id)
        logger.info("connection.deleted.after_stop id=%s", connection_id)
