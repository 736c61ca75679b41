
from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, new_id
from syncbridge.utils.clock import now_utc


"""
  installations 表
  - 每个源店铺（安装了 App 的 Shopify shop）一行
  - access_token 加密存储；为空即 needs_reinstall
  - 永不物理删除，卸载只打 uninstalled_at
"""
class Installation(Base):

    __tablename__ = "installations"

    id:          Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    shop_domain: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)

    access_token: Mapped[Optional[str]] = mapped_column(Text)          # Fernet 密文
    scopes:       Mapped[Optional[str]] = mapped_column(String(1024))  # 逗号分隔

    # webhook 注册状态
    webhooks_registered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    webhook_error:          Mapped[Optional[str]] = mapped_column(Text)

    installed_at:   Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    uninstalled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc)

    @property
    def needs_reinstall(self) -> bool:
        return not self.access_token



"""
  oauth_states 表：OAuth 握手临时记录
  - state 一次性：回调消费时原子删除，第二次使用必失败
  - 每次发起/回调时清理过期记录
"""
class OAuthState(Base):

    __tablename__ = "oauth_states"

    state:       Mapped[str] = mapped_column(String(64), primary_key=True)
    shop_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    invite_id:   Mapped[Optional[str]] = mapped_column(String(36))        # 零售商邀请安装时带上

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_oauth_states_expires_at", "expires_at"),)
