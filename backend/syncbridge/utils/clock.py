from __future__ import annotations
from datetime import datetime, timezone

def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # 与 DB naive UTC 对齐


def to_naive_utc(value: datetime) -> datetime:
    """带时区的时间统一转成 naive UTC；naive 视为已是 UTC。"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def minutes_between(start: datetime, end: datetime) -> float:
    return (to_naive_utc(end) - to_naive_utc(start)).total_seconds() / 60.0
