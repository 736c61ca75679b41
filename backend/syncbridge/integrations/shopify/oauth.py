"""Shopify OAuth：authorize URL 拼装 + code 换 access token"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from syncbridge.core.config import settings
from syncbridge.integrations.http_client import StoreHttpClient


logger = logging.getLogger(__name__)


def build_authorize_url(shop_domain: str, state: str, redirect_uri: str) -> str:
    query = urlencode({
        "client_id": settings.SHOPIFY_API_KEY,
        "scope": settings.SHOPIFY_SCOPES,
        "redirect_uri": redirect_uri,
        "state": state,
    })
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


"""
  POST https://{shop}/admin/oauth/access_token
  非 2xx / 网络错误 → ConnectorError 系列（调用方转成 TokenExchangeFailed）
  返回原始 JSON：{"access_token": "...", "scope": "read_products,..."}
"""
def exchange_code_for_token(shop_domain: str, code: str, *, session: Optional[requests.Session] = None) -> Dict[str, Any]:
    client = StoreHttpClient(
        f"https://{shop_domain}/admin/oauth/",
        vendor="shopify.oauth",
        headers={"Content-Type": "application/json"},
        timeout=settings.SHOPIFY_HTTP_TIMEOUT,
        session=session,
    )
    try:
        resp = client.request("POST", "access_token", json={
            "client_id": settings.SHOPIFY_API_KEY,
            "client_secret": settings.SHOPIFY_API_SECRET.get_secret_value(),
            "code": code,
        })
        data = client.as_json(resp)
    finally:
        if session is None:
            client.close()
    logger.info("shopify.oauth.token_exchanged shop=%s scopes=%s", shop_domain, (data or {}).get("scope"))
    return data or {}
