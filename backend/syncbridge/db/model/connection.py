
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, CheckConstraint, UniqueConstraint, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column
from syncbridge.db.base import Base, JSONType, new_id
from syncbridge.utils.clock import now_utc


PLATFORM_SHOPIFY = "shopify"
PLATFORM_WOOCOMMERCE = "woocommerce"
PLATFORMS = (PLATFORM_SHOPIFY, PLATFORM_WOOCOMMERCE)

STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_DISABLED = "disabled"

# disabled 的原因（鉴权类可由重新授权/更新凭证自动恢复）
DISABLED_SOURCE_UNAUTHORIZED = "source_unauthorized"
DISABLED_DESTINATION_UNAUTHORIZED = "destination_unauthorized"
DISABLED_MISSING_CREDENTIAL = "missing_credential"


"""
  connections 表：一个源店铺 → 一个目标店铺的同步配对
  - platform=shopify:     dest_shop_domain + dest_access_token
  - platform=woocommerce: base_url + consumer_key + consumer_secret
  - dest_key: 归一化后的目标标识，用于 (installation, platform, dest_key) 唯一
"""
class Connection(Base):

    __tablename__ = "connections"

    id:              Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    installation_id: Mapped[str] = mapped_column(String(36), ForeignKey("installations.id", ondelete="CASCADE"), index=True, nullable=False)
    name:            Mapped[str] = mapped_column(String(255), nullable=False)
    platform:        Mapped[str] = mapped_column(String(32), nullable=False)
    dest_key:        Mapped[str] = mapped_column(String(512), nullable=False)

    # 目标店铺凭证（密文）
    dest_shop_domain:  Mapped[Optional[str]] = mapped_column(String(255))
    dest_access_token: Mapped[Optional[str]] = mapped_column(Text)
    base_url:          Mapped[Optional[str]] = mapped_column(String(512))
    consumer_key:      Mapped[Optional[str]] = mapped_column(String(255))
    consumer_secret:   Mapped[Optional[str]] = mapped_column(Text)
    dest_location_id:  Mapped[Optional[str]] = mapped_column(String(128))   # 写库存必填

    status:          Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_ACTIVE, server_default=STATUS_ACTIVE)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(64))

    # 同步规则
    sync_price:       Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    sync_categories:  Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    sync_tags:        Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    sync_collections: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    create_missing:   Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    publish_new:      Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    mapping_rules:    Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)   # 价格倍率/过滤器

    delete_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_synced_at:      Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("installation_id", "platform", "dest_key", name="uq_connections_destination"),
        CheckConstraint("platform IN ('shopify','woocommerce')", name="platform"),
        CheckConstraint("status IN ('active','paused','disabled')", name="status"),
        Index("ix_connections_status", "status"),
    )

    @property
    def destination(self) -> str:
        return (self.dest_shop_domain if self.platform == PLATFORM_SHOPIFY else self.base_url) or ""
