"""
源店铺 webhook → 同步 job
  products/create|update   → 对该店铺每个 active connection 入队 incremental（限定 payload 里的 variant SKU）
  inventory_levels/update  → payload 只有 inventory_item_id，入队 full_sync
  app/uninstalled          → 丢弃 token
  合规主题（customers/*, shop/redact）只应答：不保存顾客数据
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from syncbridge.db.model.sync_job import JOB_FULL_SYNC, JOB_INCREMENTAL, TRIGGER_WEBHOOK
from syncbridge.orchestration.connection_sync import job_scheduler
from syncbridge.repository import connection_repo, installation_repo
from syncbridge.services import installation_service
from syncbridge.services.errors import SyncBridgeError


logger = logging.getLogger(__name__)

PRODUCT_TOPICS = {"products/create", "products/update"}
INVENTORY_TOPICS = {"inventory_levels/update"}
UNINSTALL_TOPIC = "app/uninstalled"
ACK_TOPICS = {"products/delete", "customers/data_request", "customers/redact", "shop/redact"}


def variant_skus(payload: Mapping[str, Any]) -> List[str]:
    skus = []
    for v in payload.get("variants") or []:
        sku = (v or {}).get("sku")
        if sku and str(sku).strip():
            skus.append(str(sku).strip())
    return sorted(set(skus))


def handle_webhook(
    db: Session,
    topic: str,
    shop_domain: str,
    payload: Mapping[str, Any],
    *,
    dispatcher: Optional[job_scheduler.Dispatcher] = None,
) -> Dict[str, Any]:
    topic = (topic or "").strip().lower()
    shop = (shop_domain or "").strip().lower()

    if topic == UNINSTALL_TOPIC:
        row = installation_service.mark_uninstalled(db, shop)
        return {"topic": topic, "action": "uninstalled" if row else "unknown_shop"}

    if topic in ACK_TOPICS:
        return {"topic": topic, "action": "acknowledged"}

    if topic in PRODUCT_TOPICS:
        skus = variant_skus(payload)
        if not skus:
            return {"topic": topic, "action": "ignored", "reason": "no_skus"}
        return _fan_out(db, topic, shop, JOB_INCREMENTAL, skus, dispatcher)

    if topic in INVENTORY_TOPICS:
        return _fan_out(db, topic, shop, JOB_FULL_SYNC, None, dispatcher)

    logger.info("webhook.ignored topic=%s shop=%s", topic, shop)
    return {"topic": topic, "action": "ignored", "reason": "unsupported_topic"}


def _fan_out(
    db: Session,
    topic: str,
    shop: str,
    job_type: str,
    skus: Optional[List[str]],
    dispatcher: Optional[job_scheduler.Dispatcher],
) -> Dict[str, Any]:
    installation = installation_repo.get_by_shop(db, shop)
    if installation is None:
        logger.warning("webhook.unknown_shop topic=%s shop=%s", topic, shop)
        return {"topic": topic, "action": "ignored", "reason": "unknown_shop"}

    enqueued: List[str] = []
    skipped: Dict[str, str] = {}
    for conn in connection_repo.list_for_installation(db, installation.id):
        try:
            job = job_scheduler.enqueue(db, conn.id, job_type, TRIGGER_WEBHOOK, scope_skus=skus, dispatcher=dispatcher)
            enqueued.append(job.id)
        except SyncBridgeError as e:
            # 已有 job / 暂停 / 禁用：跳过，不让 Shopify 重试
            skipped[conn.id] = e.code

    logger.info(
        "webhook.fan_out topic=%s shop=%s type=%s skus=%s enqueued=%s skipped=%s",
        topic, shop, job_type, len(skus or []), len(enqueued), len(skipped),
    )
    return {"topic": topic, "action": job_type, "jobs": enqueued, "skipped": skipped}
