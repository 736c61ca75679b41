
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, JSONType, new_id
from syncbridge.utils.clock import now_utc


"""
  connection_templates 表：去掉密钥的 connection 配置快照
  - config 里只有平台、目标标识与规则，不含 token / consumer_secret
  - 与来源 connection 互不影响
"""
class ConnectionTemplate(Base):

    __tablename__ = "connection_templates"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    installation_id: Mapped[str] = mapped_column(String(36), ForeignKey("installations.id", ondelete="CASCADE"), index=True, nullable=False)
    name:            Mapped[str] = mapped_column(String(255), nullable=False)
    description:     Mapped[Optional[str]] = mapped_column(Text)
    platform:        Mapped[str] = mapped_column(String(32), nullable=False)
    config:          Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc)
