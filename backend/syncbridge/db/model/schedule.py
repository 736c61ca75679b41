from __future__ import annotations
from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, Boolean, Integer, DateTime, CheckConstraint, func, Index
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base
from syncbridge.utils.clock import now_utc


"""
  schedules 表
  - key: 业务键，目前只有 connection_full_sync
  - hours: 每天触发的整点（逗号分隔，按 timezone 解释），例如 "1,9,17"
 """
class Schedule(Base):

    __tablename__ = "schedules"

    # 主键：业务键
    key: Mapped[str]  = mapped_column(String(64), primary_key=True)

    enabled:        Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)   # 是否启用
    hours:          Mapped[str]  = mapped_column(String(64), nullable=False)               # "1,9,17"
    window_minutes: Mapped[int]  = mapped_column(Integer, nullable=False, default=5)       # 整点后多少分钟内有效
    timezone:       Mapped[str]  = mapped_column(String(64), nullable=False, default="UTC")

    # 上次“真正触发成功”的时间（naive UTC）
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc)

    __table_args__ = (
        CheckConstraint("window_minutes >= 1 AND window_minutes <= 59", name="window_minutes"),
        Index("ix_schedules_enabled", "enabled"),
    )

    @property
    def hour_list(self) -> List[int]:
        return sorted({int(h) for h in (self.hours or "").split(",") if h.strip()})
