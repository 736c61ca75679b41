# connection_invites database repository

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from syncbridge.db.model.invite import ConnectionInvite, INVITE_ACCEPTED, INVITE_EXPIRED, INVITE_PENDING
from syncbridge.utils.clock import now_utc


def get(db: Session, invite_id: str) -> Optional[ConnectionInvite]:
    return db.get(ConnectionInvite, invite_id, populate_existing=True)


def get_by_token(db: Session, token: str) -> Optional[ConnectionInvite]:
    stmt = select(ConnectionInvite).where(ConnectionInvite.token == token)
    return db.scalars(stmt.execution_options(populate_existing=True)).first()


def list_for_installation(db: Session, installation_id: str) -> List[ConnectionInvite]:
    stmt = (
        select(ConnectionInvite)
        .where(ConnectionInvite.installation_id == installation_id)
        .order_by(ConnectionInvite.created_at.desc())
    )
    return list(db.scalars(stmt))


def insert(
    db: Session,
    installation_id: str,
    *,
    name: str,
    dest_shop_domain: str,
    token: str,
    expires_at: datetime,
    email: Optional[str] = None,
) -> ConnectionInvite:
    row = ConnectionInvite(
        installation_id=installation_id,
        name=name,
        dest_shop_domain=dest_shop_domain,
        email=email,
        token=token,
        status=INVITE_PENDING,
        expires_at=expires_at,
        created_at=now_utc(),
    )
    db.add(row)
    db.commit()
    return row


def mark_expired(db: Session, invite_ids: Iterable[str]) -> int:
    ids = list(invite_ids)
    if not ids:
        return 0
    res = db.execute(
        update(ConnectionInvite)
        .where(ConnectionInvite.id.in_(ids), ConnectionInvite.status == INVITE_PENDING)
        .values(status=INVITE_EXPIRED)
    )
    db.commit()
    return res.rowcount or 0


def mark_accepted(db: Session, invite_id: str, connection_id: str, now: Optional[datetime] = None) -> bool:
    """pending → accepted 条件更新；重复接受返回 False。"""
    res = db.execute(
        update(ConnectionInvite)
        .where(ConnectionInvite.id == invite_id, ConnectionInvite.status == INVITE_PENDING)
        .values(status=INVITE_ACCEPTED, connection_id=connection_id, accepted_at=now or now_utc())
    )
    db.commit()
    return res.rowcount == 1
