"""
Connection 增改查 + 列表摘要
  - 目标凭证入库前加密；摘要里只给 mask / 是否存在
  - 鉴权类 disabled（destination_unauthorized）在换了新凭证后自动恢复
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.db.model.connection import (
    Connection, PLATFORMS, PLATFORM_SHOPIFY,
    STATUS_ACTIVE, STATUS_DISABLED, DISABLED_DESTINATION_UNAUTHORIZED, DISABLED_MISSING_CREDENTIAL,
)
from syncbridge.db.model.installation import Installation
from syncbridge.integrations.woocommerce.woo_store import normalize_base_url
from syncbridge.repository import connection_repo, sync_job_repo
from syncbridge.services.diff_engine import MappingRules
from syncbridge.services.errors import AlreadyExists, NotFoundError, ValidationError
from syncbridge.utils.secrets import encrypt_value, mask_value
from syncbridge.utils.shop_domain import has_scheme, is_valid_shop_domain, normalize_shop_domain


logger = logging.getLogger(__name__)

RULE_FIELDS = ("sync_price", "sync_categories", "sync_tags", "sync_collections", "create_missing", "publish_new")
DEST_FIELDS = ("dest_shop_domain", "dest_access_token", "base_url", "consumer_key", "consumer_secret", "dest_location_id")
SECRET_FIELDS = ("dest_access_token", "consumer_secret")
_EDITABLE = {"name", "mapping_rules", *RULE_FIELDS, *DEST_FIELDS}
_CREDENTIAL_REASONS = (DISABLED_DESTINATION_UNAUTHORIZED, DISABLED_MISSING_CREDENTIAL)   # 换了凭证即可恢复


# ---------- 规范化 ----------
def _dest_key(platform: str, fields: Mapping[str, Any]) -> str:
    if platform == PLATFORM_SHOPIFY:
        return fields["dest_shop_domain"]
    return (fields["base_url"] or "").lower()


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _validate(platform: str, fields: Dict[str, Any], *, secrets_present: Mapping[str, bool]) -> None:
    """
    fields: 明文；secrets_present: 该密钥是否已有（更新时旧值在库里是密文）
    """
    if not _clean(fields.get("name")):
        raise ValidationError("name is required")
    if platform not in PLATFORMS:
        raise ValidationError(f"platform must be one of {PLATFORMS}")

    if platform == PLATFORM_SHOPIFY:
        if not fields.get("dest_shop_domain"):
            raise ValidationError("dest_shop_domain is required for shopify connections")
        if not is_valid_shop_domain(fields["dest_shop_domain"]):
            raise ValidationError(f"invalid dest_shop_domain: {fields['dest_shop_domain']}")
        if not secrets_present.get("dest_access_token"):
            raise ValidationError("dest_access_token is required for shopify connections")
    else:
        base_url = fields.get("base_url") or ""
        if not base_url:
            raise ValidationError("base_url is required for woocommerce connections")
        if not has_scheme(base_url):
            raise ValidationError("base_url must start with http:// or https://")
        if not fields.get("consumer_key"):
            raise ValidationError("consumer_key is required for woocommerce connections")
        if not secrets_present.get("consumer_secret"):
            raise ValidationError("consumer_secret is required for woocommerce connections")

    try:
        MappingRules.from_dict(fields.get("mapping_rules"))
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _normalize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(fields)
    if "name" in out:
        out["name"] = _clean(out["name"]) or ""
    if "dest_shop_domain" in out:
        out["dest_shop_domain"] = normalize_shop_domain(out["dest_shop_domain"]) or None
    if "base_url" in out:
        out["base_url"] = normalize_base_url(out["base_url"] or "") or None
    for k in ("consumer_key", "dest_location_id", "dest_access_token", "consumer_secret"):
        if k in out:
            out[k] = _clean(out[k])
    for k in RULE_FIELDS:
        if k in out and out[k] is not None:
            out[k] = bool(out[k])
    if "mapping_rules" in out and out["mapping_rules"] is None:
        out["mapping_rules"] = {}
    return out


# ---------- Query ----------
def get_connection(db: Session, installation: Installation, connection_id: str) -> Connection:
    conn = connection_repo.get_for_installation(db, installation.id, connection_id)
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")
    return conn


def to_summary(
    conn: Connection,
    *,
    synced_items: int = 0,
    active_job_state: Optional[str] = None,
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "id": conn.id,
        "name": conn.name,
        "type": conn.platform,
        "status": conn.status,
        "disabled_reason": conn.disabled_reason,
        "destination": conn.destination,
        "dest_location_id": conn.dest_location_id,
        "synced_items": synced_items,
        "last_synced_at": conn.last_synced_at,
        "active_job_state": active_job_state,
        "delete_requested": conn.delete_requested_at is not None,
        "rules": {k: bool(getattr(conn, k)) for k in RULE_FIELDS},
        "mapping_rules": conn.mapping_rules or {},
        "created_at": conn.created_at,
    }
    if conn.platform == PLATFORM_SHOPIFY:
        summary["has_access_token"] = bool(conn.dest_access_token)
    else:
        summary["consumer_key"] = mask_value(conn.consumer_key)
        summary["has_consumer_secret"] = bool(conn.consumer_secret)
    return summary


def list_connection_summaries(db: Session, installation: Installation) -> List[Dict[str, Any]]:
    rows = connection_repo.list_for_installation(db, installation.id)
    ids = [c.id for c in rows]
    synced = connection_repo.synced_item_counts(db, ids)
    active = sync_job_repo.active_states_for(db, ids)
    return [to_summary(c, synced_items=synced.get(c.id, 0), active_job_state=active.get(c.id)) for c in rows]


def get_connection_summary(db: Session, installation: Installation, connection_id: str) -> Dict[str, Any]:
    conn = get_connection(db, installation, connection_id)
    synced = connection_repo.synced_item_counts(db, [conn.id])
    active = sync_job_repo.active_states_for(db, [conn.id])
    return to_summary(conn, synced_items=synced.get(conn.id, 0), active_job_state=active.get(conn.id))


# ---------- Mutations ----------
def create_connection(db: Session, installation: Installation, data: Mapping[str, Any]) -> Connection:
    unknown = set(data) - _EDITABLE - {"platform"}
    if unknown:
        raise ValidationError(f"unknown fields: {sorted(unknown)}")

    fields = _normalize_fields(dict(data))
    platform = (fields.pop("platform", None) or "").strip().lower()
    _validate(platform, fields, secrets_present={k: bool(fields.get(k)) for k in SECRET_FIELDS})

    if platform == PLATFORM_SHOPIFY:
        for k in ("base_url", "consumer_key", "consumer_secret"):
            fields.pop(k, None)
    else:
        for k in ("dest_shop_domain", "dest_access_token"):
            fields.pop(k, None)

    dest_key = _dest_key(platform, fields)
    if connection_repo.find_duplicate(db, installation.id, platform, dest_key):
        raise AlreadyExists(f"a {platform} connection to {dest_key} already exists")

    for k in SECRET_FIELDS:
        if k in fields:
            fields[k] = encrypt_value(fields[k])
    rules = {k: fields.pop(k) for k in RULE_FIELDS if fields.get(k) is not None}

    try:
        conn = connection_repo.insert(
            db,
            installation_id=installation.id,
            platform=platform,
            dest_key=dest_key,
            status=STATUS_ACTIVE,
            **{k: v for k, v in fields.items() if k not in RULE_FIELDS},
            **rules,
        )
    except IntegrityError as e:
        raise AlreadyExists(f"a {platform} connection to {dest_key} already exists") from e

    logger.info("connection.created id=%s platform=%s dest=%s", conn.id, platform, dest_key)
    return conn


def update_connection(db: Session, installation: Installation, connection_id: str, changes: Mapping[str, Any]) -> Connection:
    conn = get_connection(db, installation, connection_id)
    unknown = set(changes) - _EDITABLE
    if unknown:
        raise ValidationError(f"not editable: {sorted(unknown)}")

    updates = _normalize_fields(dict(changes))
    # 空密钥 = 不修改
    for k in SECRET_FIELDS:
        if k in updates and not updates[k]:
            updates.pop(k)

    merged: Dict[str, Any] = {
        "name": conn.name,
        "dest_shop_domain": conn.dest_shop_domain,
        "base_url": conn.base_url,
        "consumer_key": conn.consumer_key,
        "mapping_rules": conn.mapping_rules,
    }
    merged.update({k: v for k, v in updates.items() if k not in SECRET_FIELDS})
    secrets_present = {k: bool(updates.get(k) or getattr(conn, k)) for k in SECRET_FIELDS}
    _validate(conn.platform, merged, secrets_present=secrets_present)

    new_credential = any(k in updates for k in ("dest_access_token", "consumer_secret", "consumer_key", "dest_shop_domain", "base_url"))

    dest_key = _dest_key(conn.platform, merged)
    if dest_key != conn.dest_key:
        if connection_repo.find_duplicate(db, installation.id, conn.platform, dest_key, exclude_id=conn.id):
            raise AlreadyExists(f"a {conn.platform} connection to {dest_key} already exists")
        updates["dest_key"] = dest_key

    for k in SECRET_FIELDS:
        if k in updates:
            updates[k] = encrypt_value(updates[k])
    updates = {k: v for k, v in updates.items() if not (k in RULE_FIELDS and v is None)}

    try:
        conn = connection_repo.update_fields(db, conn.id, **updates)
    except IntegrityError as e:
        raise AlreadyExists(f"a {conn.platform} connection to {dest_key} already exists") from e
    if conn is None:
        raise NotFoundError(f"connection {connection_id} not found")

    if new_credential and conn.status == STATUS_DISABLED and conn.disabled_reason in _CREDENTIAL_REASONS:
        connection_repo.reactivate_disabled(db, reason=conn.disabled_reason, connection_id=conn.id)
        db.refresh(conn)
        logger.info("connection.reactivated id=%s reason=new_destination_credential", conn.id)

    logger.info("connection.updated id=%s fields=%s", conn.id, sorted(changes.keys()))
    return conn

