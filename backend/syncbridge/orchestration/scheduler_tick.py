
# feature: 每 5 分钟由 beat 触发一次，read schedules 表：
# 命中某个整点后的触发窗口 → 给所有 active connection 入队 full_sync

from __future__ import annotations
import datetime as dt
import logging
from typing import Any, Dict, Optional

import pytz
from celery import shared_task
from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.sync_job import JOB_FULL_SYNC, TRIGGER_SCHEDULE
from syncbridge.db.session import SessionLocal
from syncbridge.orchestration.connection_sync import job_scheduler
from syncbridge.repository import connection_repo, scheduler_repo
from syncbridge.repository.scheduler_repo import ScheduleUpsertDTO
from syncbridge.services.errors import SyncBridgeError
from syncbridge.utils.clock import now_utc, to_naive_utc


logger = logging.getLogger(__name__)

SCHEDULE_KEY = "connection_full_sync"


def default_schedule() -> ScheduleUpsertDTO:
    return ScheduleUpsertDTO(
        enabled=True,
        hours=settings.SYNC_SCHEDULE_HOURS,
        window_minutes=settings.SYNC_SCHEDULE_WINDOW_MINUTES,
        timezone="UTC",
    )


"""
feature: beat 每 5 分钟跑一次
    - 读取 schedules: key='connection_full_sync'（没有则按默认 1/9/17 点 UTC 写一行）
    - 在某个整点 [hh:00, hh:window) 内才触发；同一窗口靠 claim_window 条件更新只触发一次
    - 每个 active connection 入队一个 full_sync，已有 job / 暂停 / 禁用的跳过
"""
@shared_task(name="syncbridge.orchestration.scheduler_tick.tick_scheduled_sync")
def tick_scheduled_sync() -> Dict[str, Any]:
    db = SessionLocal()
    try:
        return run_scheduled_tick(db, now_utc())
    finally:
        db.close()


def run_scheduled_tick(
    db: Session,
    now: dt.datetime,
    *,
    dispatcher: Optional[job_scheduler.Dispatcher] = None,
) -> Dict[str, Any]:

    # 1) 读取配置；第一次跑时落默认值，claim_window 需要这行
    row = scheduler_repo.get(db, SCHEDULE_KEY)
    if row is None:
        row = scheduler_repo.upsert(db, SCHEDULE_KEY, default_schedule())
    if not row.enabled:
        return {"status": "disabled"}

    # 2) 按配置时区算窗口起点
    window_start = window_start_for(now, row.hour_list, row.window_minutes, row.timezone)
    if window_start is None:
        return {"status": "outside-window"}

    # 3) 同一窗口只触发一次
    if not scheduler_repo.claim_window(db, SCHEDULE_KEY, window_start, to_naive_utc(now)):
        return {"status": "already-fired-in-window"}

    # 4) 逐个入队；单个失败不影响其他
    enqueued, skipped = 0, 0
    for conn in connection_repo.list_active(db):
        try:
            job_scheduler.enqueue(db, conn.id, JOB_FULL_SYNC, TRIGGER_SCHEDULE, dispatcher=dispatcher)
            enqueued += 1
        except SyncBridgeError as e:
            skipped += 1
            logger.info("schedule.skip connection=%s reason=%s", conn.id, e.code)

    logger.info("schedule.fired window=%s enqueued=%s skipped=%s", window_start.isoformat(), enqueued, skipped)
    return {"status": "fired", "enqueued": enqueued, "skipped": skipped}


'''
命中窗口则返回窗口起点（naive UTC），否则 None
   - now: naive 视为 UTC
   - hours 按 tzname 的本地整点解释
'''
def window_start_for(now: dt.datetime, hours, window_minutes: int, tzname: str = "UTC") -> Optional[dt.datetime]:
    tz = pytz.timezone(tzname or "UTC")
    now_aware = now if now.tzinfo is not None else pytz.utc.localize(now)
    now_local = now_aware.astimezone(tz)

    if now_local.hour not in set(hours) or now_local.minute >= window_minutes:
        return None
    start_local = now_local.replace(minute=0, second=0, microsecond=0)
    return to_naive_utc(start_local)
