
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, CheckConstraint, Index, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, JSONType, new_id
from syncbridge.utils.clock import now_utc


JOB_FULL_SYNC = "full_sync"
JOB_INCREMENTAL = "incremental"
JOB_PREVIEW = "preview"
JOB_TYPES = (JOB_FULL_SYNC, JOB_INCREMENTAL, JOB_PREVIEW)

STATE_QUEUED = "queued"
STATE_RUNNING = "running"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_DEAD = "dead"
ACTIVE_STATES = (STATE_QUEUED, STATE_RUNNING)
TERMINAL_STATES = (STATE_SUCCEEDED, STATE_FAILED, STATE_DEAD)

TRIGGER_MANUAL = "manual"
TRIGGER_WEBHOOK = "webhook"
TRIGGER_SCHEDULE = "schedule"
TRIGGER_RETRY = "retry"

ITEM_PENDING = "pending"
ITEM_SUCCEEDED = "succeeded"
ITEM_FAILED = "failed"

# 单飞锁：同一 connection 同时最多一个 queued/running 的 job
_ACTIVE_WHERE = text("state IN ('queued', 'running')")


"""
  sync_jobs 表：一次同步执行
  - 状态单调：queued → running → succeeded / failed；失败超过重试上限为 dead
  - 计数器只用 SQL 自增更新，崩溃后保留真实进度
"""
class SyncJob(Base):

    __tablename__ = "sync_jobs"

    id:            Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    connection_id: Mapped[str] = mapped_column(String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    job_type:      Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_FULL_SYNC)
    state:         Mapped[str] = mapped_column(String(16), nullable=False, default=STATE_QUEUED)
    trigger:       Mapped[str] = mapped_column(String(16), nullable=False, default=TRIGGER_MANUAL)

    # 重试链
    attempt:        Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    retry_of_id:    Mapped[Optional[str]] = mapped_column(String(36))
    retry_enqueued: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    retryable:      Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))   # 鉴权失败/取消的 job 不自动重试

    scope_skus: Mapped[Optional[List[str]]] = mapped_column(JSONType)   # incremental 限定的 SKU

    # 进度计数
    total:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    failed:    Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    skipped:   Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    retries:   Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    plan_ready:       Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    plan_summary:     Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    last_error:       Mapped[Optional[str]] = mapped_column(Text)

    # 时间追踪
    queued_at:        Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    started_at:       Mapped[Optional[datetime]] = mapped_column(DateTime)
    heartbeat_at:     Mapped[Optional[datetime]] = mapped_column(DateTime)   # 存活心跳，超过 deadline 视为 stale
    finished_at:      Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)

    __table_args__ = (
        Index(
            "uq_sync_jobs_active_connection", "connection_id", unique=True,
            postgresql_where=_ACTIVE_WHERE, sqlite_where=_ACTIVE_WHERE,
        ),
        Index("ix_sync_jobs_connection_queued", "connection_id", "queued_at"),
        Index("ix_sync_jobs_state", "state"),
        CheckConstraint("state IN ('queued','running','succeeded','failed','dead')", name="state"),
        CheckConstraint("job_type IN ('full_sync','incremental','preview')", name="job_type"),
    )

    @property
    def remaining(self) -> int:
        return max(0, (self.total or 0) - (self.completed or 0) - (self.failed or 0))

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES



'''
  sync_job_items 表：计划中需要落地的 item（create/update）
  - position 保持 listItems 的顺序
  - attempts / next_attempt_at 即该 item 的重试状态（不阻塞 worker sleep）
'''
class SyncJobItem(Base):

    __tablename__ = "sync_job_items"

    id:       Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id:   Mapped[str] = mapped_column(String(36), ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    sku:      Mapped[str] = mapped_column(String(255), nullable=False)
    action:   Mapped[str] = mapped_column(String(16), nullable=False)                   # create / update
    payload:  Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    state:           Mapped[str] = mapped_column(String(16), nullable=False, default=ITEM_PENDING)
    attempts:        Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error:      Mapped[Optional[str]] = mapped_column(Text)
    updated_at:      Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_sync_job_items_position"),
        Index("ix_sync_job_items_job_state", "job_id", "state", "position"),
        Index("ix_sync_job_items_sku", "sku"),
    )
