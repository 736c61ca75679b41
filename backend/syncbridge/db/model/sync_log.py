
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, CheckConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, JSONType
from syncbridge.utils.clock import now_utc


LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"
LEVELS = (LEVEL_INFO, LEVEL_WARN, LEVEL_ERROR)

# 健康度直接判 critical 的事件
CODE_UNAUTHORIZED = "unauthorized"
CODE_JOB_DEAD = "job_dead"
CRITICAL_CODES = (CODE_UNAUTHORIZED, CODE_JOB_DEAD)


"""
  sync_logs 表：按 connection 追加的审计/错误日志
  - health 汇总的数据来源（窗口内按 level 计数）
  - 只追加，不更新
"""
class SyncLogEntry(Base):

    __tablename__ = "sync_logs"

    id:            Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("connections.id", ondelete="CASCADE"))
    job_id:        Mapped[Optional[str]] = mapped_column(String(36))
    shop_domain:   Mapped[Optional[str]] = mapped_column(String(255))   # 安装/握手类日志没有 connection

    level:   Mapped[str] = mapped_column(String(8), nullable=False)
    code:    Mapped[Optional[str]] = mapped_column(String(64))
    sku:     Mapped[Optional[str]] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())

    __table_args__ = (
        CheckConstraint("level IN ('info','warn','error')", name="level"),
        Index("ix_sync_logs_connection_created", "connection_id", "created_at"),
        Index("ix_sync_logs_shop_created", "shop_domain", "created_at"),
    )
