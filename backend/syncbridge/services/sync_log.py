"""
持久化审计日志的统一入口：先写 sync_logs，再打进程日志
  - 失败在抛出/吞掉之前都要走这里，health 汇总只看这张表
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from syncbridge.db.model.sync_log import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN, SyncLogEntry
from syncbridge.core.config import settings
from syncbridge.repository import sync_job_repo, sync_log_repo
from syncbridge.utils.clock import now_utc


logger = logging.getLogger(__name__)

_PY_LEVEL = {LEVEL_INFO: logging.INFO, LEVEL_WARN: logging.WARNING, LEVEL_ERROR: logging.ERROR}


def record(
    db: Session,
    level: str,
    message: str,
    *,
    code: Optional[str] = None,
    connection_id: Optional[str] = None,
    job_id: Optional[str] = None,
    shop_domain: Optional[str] = None,
    sku: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SyncLogEntry:
    entry = sync_log_repo.append(
        db,
        level=level,
        message=message,
        code=code,
        connection_id=connection_id,
        job_id=job_id,
        shop_domain=shop_domain,
        sku=sku,
        details=details,
    )
    logger.log(
        _PY_LEVEL.get(level, logging.INFO),
        "synclog.%s code=%s connection=%s job=%s shop=%s sku=%s msg=%s",
        level, code, connection_id, job_id, shop_domain, sku, message,
    )
    return entry


def info(db: Session, message: str, **kwargs: Any) -> SyncLogEntry:
    return record(db, LEVEL_INFO, message, **kwargs)


def warn(db: Session, message: str, **kwargs: Any) -> SyncLogEntry:
    return record(db, LEVEL_WARN, message, **kwargs)


def error(db: Session, message: str, **kwargs: Any) -> SyncLogEntry:
    return record(db, LEVEL_ERROR, message, **kwargs)


# ---------- 保留窗口 ----------
def purge_expired(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """超过 SYNC_LOG_RETENTION_DAYS 的日志和已结束 job 的 items 一起清掉。"""
    cutoff = (now or now_utc()) - timedelta(days=settings.SYNC_LOG_RETENTION_DAYS)
    stats = {
        "logs": sync_log_repo.purge_before(db, cutoff),
        "items": sync_job_repo.purge_items_before(db, cutoff),
    }
    if any(stats.values()):
        logger.info("synclog.purged cutoff=%s logs=%s items=%s", cutoff.isoformat(), stats["logs"], stats["items"])
    return stats
