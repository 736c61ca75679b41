# schedule database repository

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pytz
from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.db.model.schedule import Schedule
from syncbridge.utils.clock import now_utc


@dataclass(slots=True)
class ScheduleUpsertDTO:
    enabled: bool
    hours: str                 # "1,9,17"
    window_minutes: int = 5
    timezone: str = "UTC"


# ---------- Query ----------
def list_all(db: Session) -> list[Schedule]:
    stmt = select(Schedule).order_by(Schedule.key.asc())
    return list(db.scalars(stmt))


def get(db: Session, key: str) -> Optional[Schedule]:
    stmt = select(Schedule).where(Schedule.key == key)
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def get_or_default(db: Session, key: str, default: ScheduleUpsertDTO) -> Schedule:
    """库里没有时返回未持久化的默认配置（不写库）。"""
    row = get(db, key)
    if row is not None:
        return row
    _validate(default)
    return Schedule(
        key=key,
        enabled=default.enabled,
        hours=_normalize_hours(default.hours),
        window_minutes=default.window_minutes,
        timezone=default.timezone,
        created_at=now_utc(),
    )


# ---------- Mutations ----------
def upsert(db: Session, key: str, dto: ScheduleUpsertDTO) -> Schedule:
    """有则更新，无则插入。"""
    _validate(dto)
    now = now_utc()
    values = dict(
        enabled=dto.enabled,
        hours=_normalize_hours(dto.hours),
        window_minutes=dto.window_minutes,
        timezone=dto.timezone,
        updated_at=now,
    )

    upd = update(Schedule).where(Schedule.key == key).values(**values)
    res = db.execute(upd)
    if res.rowcount:
        db.commit()
    else:
        try:
            db.execute(insert(Schedule).values(key=key, created_at=now, **values))
            db.commit()
        except IntegrityError:
            db.rollback()
            db.execute(upd)
            db.commit()

    row = get(db, key)
    if row is None:
        raise RuntimeError(f"failed to upsert schedule {key}")
    return row


def claim_window(db: Session, key: str, window_start: datetime, now: datetime) -> bool:
    """
    同一窗口只触发一次：last_run_at 早于本窗口起点才更新，rowcount==1 即抢到。
    """
    res = db.execute(
        update(Schedule)
        .where(Schedule.key == key)
        .where(or_(Schedule.last_run_at.is_(None), Schedule.last_run_at < window_start))
        .values(last_run_at=now)
    )
    db.commit()
    return res.rowcount == 1


# ---------- Validation ----------
def _normalize_hours(hours: str) -> str:
    return ",".join(str(h) for h in sorted({int(h) for h in str(hours).split(",") if h.strip()}))


def _validate(dto: ScheduleUpsertDTO) -> None:
    try:
        parsed = [int(h) for h in str(dto.hours).split(",") if h.strip()]
    except ValueError:
        raise ValueError("hours must be a comma separated list of integers")
    if not parsed:
        raise ValueError("hours must not be empty")
    if any(not (0 <= h <= 23) for h in parsed):
        raise ValueError("hours must be integers in [0, 23]")
    if not isinstance(dto.window_minutes, int) or not (1 <= dto.window_minutes <= 59):
        raise ValueError("window_minutes must be an integer in [1, 59]")
    if dto.timezone not in pytz.all_timezones_set:
        raise ValueError(f"unknown timezone: {dto.timezone}")
