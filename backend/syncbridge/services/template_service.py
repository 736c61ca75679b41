"""
Connection 模板：保存去掉密钥的配置，批量开新 connection 时复用
  - dest_access_token / consumer_secret 永远不进模板
  - 实例化时必须由调用方重新提供密钥
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from syncbridge.db.model.connection import Connection, PLATFORMS, PLATFORM_SHOPIFY
from syncbridge.db.model.installation import Installation
from syncbridge.db.model.template import ConnectionTemplate
from syncbridge.repository import template_repo
from syncbridge.services import connection_service
from syncbridge.services.connection_service import RULE_FIELDS, SECRET_FIELDS
from syncbridge.services.diff_engine import MappingRules
from syncbridge.services.errors import NotFoundError, ValidationError


logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ("dest_shop_domain", "dest_location_id", "base_url", "consumer_key", "mapping_rules", *RULE_FIELDS)


def _secret_field(platform: str) -> str:
    return "dest_access_token" if platform == PLATFORM_SHOPIFY else "consumer_secret"


def _clean_config(config: Mapping[str, Any]) -> Dict[str, Any]:
    """只保留模板字段；密钥字段直接丢弃。"""
    out = {k: v for k, v in (config or {}).items() if k in TEMPLATE_FIELDS and k not in SECRET_FIELDS}
    try:
        MappingRules.from_dict(out.get("mapping_rules"))
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return out


def to_summary(tpl: ConnectionTemplate) -> Dict[str, Any]:
    return {
        "id": tpl.id,
        "name": tpl.name,
        "description": tpl.description,
        "type": tpl.platform,
        "config": tpl.config or {},
        "created_at": tpl.created_at,
    }


# ---------- CRUD ----------
def list_templates(db: Session, installation: Installation) -> List[ConnectionTemplate]:
    return template_repo.list_for_installation(db, installation.id)


def get_template(db: Session, installation: Installation, template_id: str) -> ConnectionTemplate:
    tpl = template_repo.get_for_installation(db, installation.id, template_id)
    if tpl is None:
        raise NotFoundError(f"template {template_id} not found")
    return tpl


def create_template(
    db: Session,
    installation: Installation,
    *,
    name: str,
    platform: str,
    config: Mapping[str, Any],
    description: Optional[str] = None,
) -> ConnectionTemplate:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    platform = (platform or "").strip().lower()
    if platform not in PLATFORMS:
        raise ValidationError(f"platform must be one of {PLATFORMS}")
    tpl = template_repo.insert(
        db, installation.id, name=name, platform=platform, config=_clean_config(config), description=description
    )
    logger.info("template.created id=%s platform=%s", tpl.id, platform)
    return tpl


def create_template_from_connection(
    db: Session,
    installation: Installation,
    connection_id: str,
    name: str,
    description: Optional[str] = None,
) -> ConnectionTemplate:
    conn = connection_service.get_connection(db, installation, connection_id)
    config: Dict[str, Any] = {
        "dest_location_id": conn.dest_location_id,
        "mapping_rules": conn.mapping_rules or {},
        **{k: bool(getattr(conn, k)) for k in RULE_FIELDS},
    }
    if conn.platform == PLATFORM_SHOPIFY:
        config["dest_shop_domain"] = conn.dest_shop_domain
    else:
        config["base_url"] = conn.base_url
        config["consumer_key"] = conn.consumer_key
    return create_template(db, installation, name=name or conn.name, platform=conn.platform, config=config, description=description)


def delete_template(db: Session, installation: Installation, template_id: str) -> None:
    if not template_repo.delete_for_installation(db, installation.id, template_id):
        raise NotFoundError(f"template {template_id} not found")


# ---------- 实例化 ----------
def instantiate_template(
    db: Session,
    installation: Installation,
    template_id: str,
    name: str,
    secret: Optional[str],
    overrides: Optional[Mapping[str, Any]] = None,
) -> Connection:
    tpl = get_template(db, installation, template_id)
    field = _secret_field(tpl.platform)
    if not (secret or "").strip():
        raise ValidationError(f"{field} is required to create a connection from a template")

    data: Dict[str, Any] = {**(tpl.config or {}), **_clean_config(overrides or {})}
    data.update({"name": name, "platform": tpl.platform, field: secret})
    conn = connection_service.create_connection(db, installation, data)
    logger.info("template.instantiated template=%s connection=%s", tpl.id, conn.id)
    return conn
