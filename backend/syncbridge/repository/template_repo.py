# connection_templates database repository

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from syncbridge.db.model.template import ConnectionTemplate


def list_for_installation(db: Session, installation_id: str) -> List[ConnectionTemplate]:
    stmt = (
        select(ConnectionTemplate)
        .where(ConnectionTemplate.installation_id == installation_id)
        .order_by(ConnectionTemplate.created_at.desc())
    )
    return list(db.scalars(stmt))


def get_for_installation(db: Session, installation_id: str, template_id: str) -> Optional[ConnectionTemplate]:
    stmt = select(ConnectionTemplate).where(
        ConnectionTemplate.id == template_id, ConnectionTemplate.installation_id == installation_id
    )
    return db.scalars(stmt).first()


def insert(
    db: Session,
    installation_id: str,
    *,
    name: str,
    platform: str,
    config: Dict[str, Any],
    description: Optional[str] = None,
) -> ConnectionTemplate:
    row = ConnectionTemplate(
        installation_id=installation_id, name=name, platform=platform, config=config, description=description
    )
    db.add(row)
    db.commit()
    return row


def delete_for_installation(db: Session, installation_id: str, template_id: str) -> bool:
    res = db.execute(
        delete(ConnectionTemplate).where(
            ConnectionTemplate.id == template_id, ConnectionTemplate.installation_id == installation_id
        )
    )
    db.commit()
    return bool(res.rowcount)
