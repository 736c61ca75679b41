"""
零售商邀请：供货方生成安装链接 → 对方店铺完成 OAuth → 自动建一条 Shopify connection
"""
from __future__ import annotations

import logging, secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.connection import Connection, PLATFORM_SHOPIFY
from syncbridge.db.model.installation import Installation
from syncbridge.db.model.invite import ConnectionInvite, INVITE_EXPIRED, INVITE_PENDING
from syncbridge.repository import connection_repo, installation_repo, invite_repo
from syncbridge.services import connection_service, sync_log
from syncbridge.services.errors import NotFoundError, ValidationError
from syncbridge.utils.clock import now_utc
from syncbridge.utils.shop_domain import is_valid_shop_domain, normalize_shop_domain


logger = logging.getLogger(__name__)


def install_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/connect?token={token}"


def to_summary(invite: ConnectionInvite) -> Dict[str, Any]:
    return {
        "id": invite.id,
        "name": invite.name,
        "dest_shop_domain": invite.dest_shop_domain,
        "email": invite.email,
        "status": invite.status,
        "connection_id": invite.connection_id,
        "install_url": install_url(invite.token) if invite.status == INVITE_PENDING else None,
        "expires_at": invite.expires_at,
        "accepted_at": invite.accepted_at,
        "created_at": invite.created_at,
    }


def create_invite(
    db: Session,
    installation: Installation,
    name: str,
    dest_shop_domain: str,
    email: Optional[str] = None,
) -> ConnectionInvite:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    shop = normalize_shop_domain(dest_shop_domain)
    if not is_valid_shop_domain(shop):
        raise ValidationError(f"invalid dest_shop_domain: {dest_shop_domain!r}")

    invite = invite_repo.insert(
        db,
        installation.id,
        name=name,
        dest_shop_domain=shop,
        email=(email or "").strip() or None,
        token=secrets.token_hex(24),
        expires_at=now_utc() + timedelta(days=settings.INVITE_TTL_DAYS),
    )
    logger.info("invite.created id=%s installation=%s dest=%s", invite.id, installation.id, shop)
    return invite


def list_invites(db: Session, installation: Installation) -> List[ConnectionInvite]:
    """过期但仍是 pending 的，顺手落库为 expired。"""
    rows = invite_repo.list_for_installation(db, installation.id)
    now = now_utc()
    stale = [r.id for r in rows if r.status == INVITE_PENDING and r.expires_at < now]
    if stale:
        invite_repo.mark_expired(db, stale)
        for r in rows:
            if r.id in stale:
                r.status = INVITE_EXPIRED
    return rows


def get_pending_invite(db: Session, token: str) -> ConnectionInvite:
    invite = invite_repo.get_by_token(db, (token or "").strip())
    if invite is None or invite.status != INVITE_PENDING:
        raise NotFoundError("invite not found or already used")
    if invite.expires_at < now_utc():
        invite_repo.mark_expired(db, [invite.id])
        raise NotFoundError("invite expired")
    return invite


"""
  接受邀请：用对方刚授权的 token 建 connection（归邀请方 installation 所有）
    - 同一目标已存在 connection 时复用并更新 token
    - 条件更新 pending → accepted，重复回调不会再建
"""
def accept_invite(
    db: Session,
    invite: ConnectionInvite,
    access_token: str,
    *,
    dest_shop_domain: Optional[str] = None,
) -> Connection:
    owner = installation_repo.get(db, invite.installation_id)
    if owner is None:
        raise NotFoundError(f"inviting installation {invite.installation_id} not found")

    shop = normalize_shop_domain(dest_shop_domain or invite.dest_shop_domain)
    if shop != invite.dest_shop_domain:
        sync_log.warn(
            db, f"invite {invite.id} accepted by {shop}, expected {invite.dest_shop_domain}",
            code="invite_shop_mismatch", shop_domain=shop,
        )

    existing = connection_repo.find_duplicate(db, owner.id, PLATFORM_SHOPIFY, shop)
    if existing is not None:
        conn = connection_service.update_connection(db, owner, existing.id, {"dest_access_token": access_token})
    else:
        conn = connection_service.create_connection(db, owner, {
            "name": invite.name,
            "platform": PLATFORM_SHOPIFY,
            "dest_shop_domain": shop,
            "dest_access_token": access_token,
        })

    if not invite_repo.mark_accepted(db, invite.id, conn.id):
        logger.info("invite.accept.already id=%s connection=%s", invite.id, conn.id)
    else:
        logger.info("invite.accepted id=%s connection=%s", invite.id, conn.id)
    return conn
