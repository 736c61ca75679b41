# installations / oauth_states database repository

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.db.model.installation import Installation, OAuthState
from syncbridge.utils.clock import now_utc


# ---------- Installation: Query ----------
def get(db: Session, installation_id: str) -> Optional[Installation]:
    return db.get(Installation, installation_id, populate_existing=True)


def get_by_shop(db: Session, shop_domain: str) -> Optional[Installation]:
    stmt = select(Installation).where(Installation.shop_domain == shop_domain)
    return db.scalars(stmt).first()


# ---------- Installation: Mutations ----------
def upsert_token(db: Session, shop_domain: str, encrypted_token: str, scopes: Optional[str]) -> Tuple[Installation, bool]:
    """
    有则替换 token（并清掉 uninstalled_at），无则插入。
    返回 (installation, created)
    """
    now = now_utc()
    row = get_by_shop(db, shop_domain)
    if row is not None:
        row.access_token = encrypted_token
        row.scopes = scopes
        row.uninstalled_at = None
        row.installed_at = now
        db.commit()
        return row, False

    row = Installation(shop_domain=shop_domain, access_token=encrypted_token, scopes=scopes, installed_at=now)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # 并发回调抢先插入：转为更新
        db.rollback()
        return upsert_token(db, shop_domain, encrypted_token, scopes)[0], False
    return row, True


def clear_token(db: Session, installation_id: str) -> None:
    db.execute(
        update(Installation)
        .where(Installation.id == installation_id)
        .values(access_token=None, updated_at=now_utc())
    )
    db.commit()


def mark_uninstalled(db: Session, shop_domain: str) -> Optional[Installation]:
    row = get_by_shop(db, shop_domain)
    if row is None:
        return None
    row.access_token = None
    row.uninstalled_at = now_utc()
    db.commit()
    return row


def set_webhook_result(db: Session, installation_id: str, *, registered_at: Optional[datetime], error: Optional[str]) -> None:
    values = {"webhook_error": error, "updated_at": now_utc()}
    if registered_at is not None:
        values["webhooks_registered_at"] = registered_at
    db.execute(update(Installation).where(Installation.id == installation_id).values(**values))
    db.commit()


# ---------- OAuth state ----------
def create_state(
    db: Session, state: str, shop_domain: str, *, expires_at: datetime, invite_id: Optional[str] = None
) -> OAuthState:
    row = OAuthState(state=state, shop_domain=shop_domain, invite_id=invite_id, created_at=now_utc(), expires_at=expires_at)
    db.add(row)
    db.commit()
    return row


def consume_state(db: Session, state: str) -> Optional[OAuthState]:
    """
    一次性消费：读出后按主键删除，只有 rowcount==1 的那一方算赢。
    返回的是脱离会话的快照；不存在/被别人抢先消费 → None
    """
    row = db.get(OAuthState, state)
    if row is None:
        return None
    snapshot = OAuthState(
        state=row.state, shop_domain=row.shop_domain, invite_id=row.invite_id,
        created_at=row.created_at, expires_at=row.expires_at,
    )
    res = db.execute(delete(OAuthState).where(OAuthState.state == state))
    db.commit()
    return snapshot if res.rowcount == 1 else None


def purge_expired_states(db: Session, now: Optional[datetime] = None) -> int:
    res = db.execute(delete(OAuthState).where(OAuthState.expires_at < (now or now_utc())))
    db.commit()
    return res.rowcount or 0
