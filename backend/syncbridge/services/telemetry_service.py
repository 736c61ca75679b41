"""
进度 / 健康度 / 历史 / 日志导出（只读）
  - 进度读 sync_jobs 行的计数快照，从不询问执行器
  - 健康度只由窗口内 sync_logs 的计数决定（classify_health 为纯函数）
"""
from __future__ import annotations

import logging, math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.sync_job import SyncJob
from syncbridge.db.model.sync_log import CRITICAL_CODES, LEVEL_ERROR, LEVEL_WARN, LEVELS, SyncLogEntry
from syncbridge.repository import connection_repo, sync_job_repo, sync_log_repo
from syncbridge.services.errors import NotFoundError, ValidationError
from syncbridge.utils.clock import minutes_between, now_utc


logger = logging.getLogger(__name__)

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"

EXPORT_COLUMNS = ("Timestamp", "Level", "SKU", "Message")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _require_connection(db: Session, connection_id: str) -> None:
    if connection_repo.get(db, connection_id) is None:
        raise NotFoundError(f"connection {connection_id} not found")


# ---------- progress ----------
@dataclass(slots=True)
class ProgressSnapshot:
    job_id: str
    job_type: str
    state: str
    is_running: bool
    total: int
    completed: int
    failed: int
    skipped: int
    remaining: int
    retries: int
    percentage: int
    items_per_minute: float
    estimated_minutes_remaining: Optional[float]
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    last_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def snapshot_of(job: SyncJob, now: Optional[datetime] = None) -> ProgressSnapshot:
    """
    percentage = completed / total（total 为 0 时 0）
    items_per_minute = (completed + failed) / 已用分钟
    剩余分钟 = remaining / items_per_minute，速率为 0 或刚开始时为 None
    """
    now = now or now_utc()
    total = job.total or 0
    completed = job.completed or 0
    failed = job.failed or 0
    processed = completed + failed

    percentage = _round_half_up(completed / total * 100) if total > 0 else 0

    elapsed = 0.0
    if job.started_at is not None:
        elapsed = max(0.0, minutes_between(job.started_at, job.finished_at or now))
    rate = processed / elapsed if elapsed > 0 else 0.0

    eta: Optional[float] = None
    if rate > 0 and job.is_active:
        eta = round(job.remaining / rate, 1)

    return ProgressSnapshot(
        job_id=job.id,
        job_type=job.job_type,
        state=job.state,
        is_running=job.is_active,
        total=total,
        completed=completed,
        failed=failed,
        skipped=job.skipped or 0,
        remaining=job.remaining,
        retries=job.retries or 0,
        percentage=percentage,
        items_per_minute=round(rate, 2),
        estimated_minutes_remaining=eta,
        started_at=job.started_at,
        finished_at=job.finished_at,
        last_error=job.last_error,
    )


def get_progress(db: Session, connection_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """当前 active job 的快照；没有则给最近一次；从未同步过返回 job=None。"""
    _require_connection(db, connection_id)
    job = sync_job_repo.get_active(db, connection_id) or sync_job_repo.get_latest(db, connection_id)
    if job is None:
        return {"connection_id": connection_id, "is_running": False, "message": "No sync in progress", "job": None}
    snap = snapshot_of(job, now)
    return {
        "connection_id": connection_id,
        "is_running": snap.is_running,
        "message": None if snap.is_running else "No sync in progress",
        "job": snap.to_dict(),
    }


# ---------- health ----------
def classify_health(
    counts: Mapping[str, int],
    critical_events: int = 0,
    threshold: Optional[float] = None,
) -> str:
    """
    healthy:  窗口内没有 error
    warning:  有 error，但 error / 总条数 < threshold
    critical: 比例 >= threshold，或出现过 unauthorized / job_dead
    """
    threshold = settings.HEALTH_ERROR_RATIO_THRESHOLD if threshold is None else threshold
    if critical_events > 0:
        return HEALTH_CRITICAL
    errors = int(counts.get(LEVEL_ERROR, 0))
    if errors <= 0:
        return HEALTH_HEALTHY
    total = sum(int(v) for v in counts.values())
    ratio = errors / total if total else 1.0
    return HEALTH_CRITICAL if ratio >= threshold else HEALTH_WARNING


def _window(window_hours: Optional[int]) -> int:
    hours = settings.HEALTH_WINDOW_HOURS if window_hours is None else int(window_hours)
    if hours < 1 or hours > 24 * 90:
        raise ValidationError("window_hours must be between 1 and 2160")
    return hours


def get_health(
    db: Session,
    connection_id: str,
    window_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    _require_connection(db, connection_id)
    hours = _window(window_hours)
    since = (now or now_utc()) - timedelta(hours=hours)

    counts = sync_log_repo.count_by_level(db, connection_id, since)
    critical_events = sync_log_repo.count_codes(db, connection_id, since, CRITICAL_CODES)
    total = sum(counts.values())
    return {
        "connection_id": connection_id,
        "health": classify_health(counts, critical_events),
        "window_hours": hours,
        "counts": {level: counts.get(level, 0) for level in LEVELS},
        "total_operations": total,
        "error_ratio": round(counts.get(LEVEL_ERROR, 0) / total, 4) if total else 0.0,
        "critical_events": critical_events,
    }


def _log_to_dict(row: SyncLogEntry) -> Dict[str, Any]:
    return {
        "id": row.id,
        "created_at": row.created_at,
        "level": row.level,
        "code": row.code,
        "sku": row.sku,
        "job_id": row.job_id,
        "message": row.message,
    }


def get_error_summary(
    db: Session,
    connection_id: str,
    window_hours: Optional[int] = None,
    *,
    recent_limit: int = 20,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """health + 计数 + 最近的 warn/error 条目"""
    now = now or now_utc()
    summary = get_health(db, connection_id, window_hours, now)
    since = now - timedelta(hours=summary["window_hours"])
    rows = sync_log_repo.recent(db, connection_id, since=since, levels=(LEVEL_WARN, LEVEL_ERROR), limit=recent_limit)
    conn = connection_repo.get(db, connection_id)
    summary["recent_errors"] = [_log_to_dict(r) for r in rows]
    summary["last_synced_at"] = conn.last_synced_at if conn else None
    return summary


# ---------- history ----------
def job_to_dict(job: SyncJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "state": job.state,
        "trigger": job.trigger,
        "attempt": job.attempt,
        "retry_of_id": job.retry_of_id,
        "total": job.total,
        "completed": job.completed,
        "failed": job.failed,
        "skipped": job.skipped,
        "retries": job.retries,
        "plan_summary": job.plan_summary,
        "last_error": job.last_error,
        "queued_at": job.queued_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "duration_seconds": job.duration_seconds,
    }


def get_history(db: Session, connection_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    _require_connection(db, connection_id)
    limit = settings.HISTORY_DEFAULT_LIMIT if limit is None else int(limit)
    if limit < 1 or limit > 500:
        raise ValidationError("limit must be between 1 and 500")
    return [job_to_dict(j) for j in sync_job_repo.list_recent(db, connection_id, limit)]


# ---------- export ----------
def export_logs(db: Session, connection_id: str, limit: Optional[int] = None) -> List[Tuple[str, str, str, str]]:
    """(Timestamp, Level, SKU, Message)，新的在前；CSV 由 API 层渲染。"""
    _require_connection(db, connection_id)
    limit = settings.LOG_EXPORT_LIMIT if limit is None else max(1, min(int(limit), settings.LOG_EXPORT_LIMIT))
    rows = sync_log_repo.recent(db, connection_id, limit=limit)
    logger.info("logs.export connection=%s rows=%s", connection_id, len(rows))
    return [
        (r.created_at.isoformat(timespec="seconds") + "Z", r.level.upper(), r.sku or "", r.message)
        for r in rows
    ]
