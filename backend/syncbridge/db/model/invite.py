
from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, CheckConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, new_id
from syncbridge.utils.clock import now_utc


INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_EXPIRED = "expired"


"""
  connection_invites 表：邀请零售商店铺安装并生成 connection
  - pending → accepted（对方完成安装并创建 connection）
  - pending 超过 expires_at 即 expired
"""
class ConnectionInvite(Base):

    __tablename__ = "connection_invites"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    installation_id: Mapped[str] = mapped_column(String(36), ForeignKey("installations.id", ondelete="CASCADE"), index=True, nullable=False)
    name:             Mapped[str] = mapped_column(String(255), nullable=False)
    dest_shop_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    email:            Mapped[Optional[str]] = mapped_column(String(255))
    token:            Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    status:        Mapped[str] = mapped_column(String(16), nullable=False, default=INVITE_PENDING, server_default=INVITE_PENDING)
    connection_id: Mapped[Optional[str]] = mapped_column(String(36))

    expires_at:  Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at:  Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())

    __table_args__ = (
        CheckConstraint("status IN ('pending','accepted','expired')", name="status"),
        Index("ix_connection_invites_status", "installation_id", "status"),
    )
