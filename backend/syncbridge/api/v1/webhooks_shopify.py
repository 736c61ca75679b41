# api/v1/webhooks_shopify.py

from __future__ import annotations
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from syncbridge.core.security import verify_webhook_hmac
from syncbridge.db.session import get_db
from syncbridge.services.webhook_service import handle_webhook


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["webhooks.shopify"])


'''
Webhook: 源店铺所有订阅主题共用一个地址，按 X-Shopify-Topic 分发
   - 先 HMAC 校验再看 Topic，避免用任意 Topic 绕过校验
   - 只入队不执行：Shopify 要求 5 秒内返回 200
   - 未知主题 / 被跳过的 connection 也返回 200，避免 Shopify 连续重试
'''
@router.post("")
async def shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: str = Header(default=""),
    x_shopify_topic: str = Header(default=""),
    x_shopify_shop_domain: str = Header(default=""),
    db: Session = Depends(get_db),
):
    # 1) HMAC 校验（raw body）
    raw = await request.body()
    if not x_shopify_hmac_sha256:
        raise HTTPException(status_code=401, detail="Missing HMAC")
    if not verify_webhook_hmac(x_shopify_hmac_sha256, raw):
        raise HTTPException(status_code=401, detail="Invalid HMAC")

    # 2) 解析 payload
    try:
        payload = json.loads(raw.decode("utf-8")) if raw else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    # 3) 分发
    result = handle_webhook(db, x_shopify_topic, x_shopify_shop_domain, payload)
    logger.info("webhook.received topic=%s shop=%s action=%s", x_shopify_topic, x_shopify_shop_domain, result.get("action"))
    return {"ok": True, **result}
