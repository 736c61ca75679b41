
from __future__ import annotations
import base64, hashlib, hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from jose import jwt, JWTError
from syncbridge.core.config import settings


ALGORITHM = "HS256"


'''
生成店铺会话 JWT, 塞进 Cookie
  - OAuth 回调成功后签发，subject 里只放 shop 域名
  - 没有任何服务端会话存储
'''
def create_access_token(subject: dict[str, Any], expires_minutes: int | None = None) -> str:
    expire = datetime.now(tz=timezone.utc) + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode = {"exp": expire, **subject}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# =============== Shopify 签名 ===============
def _app_secret() -> str:
    return settings.SHOPIFY_API_SECRET.get_secret_value()


'''
OAuth 回调签名（hex）
  - 除 hmac / signature 外的 query 参数按 key 排序，拼成 k=v&k=v
  - HMAC-SHA256(secret) 后取 hex，与 query 里的 hmac 比较
'''
def compute_oauth_hmac(params: Mapping[str, Any], secret: str | None = None) -> str:
    message = "&".join(
        f"{k}={params[k]}" for k in sorted(params) if k not in ("hmac", "signature")
    )
    key = (secret if secret is not None else _app_secret()).encode("utf-8")
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_oauth_hmac(params: Mapping[str, Any], secret: str | None = None) -> bool:
    provided = str(params.get("hmac") or "")
    if not provided:
        return False
    expected = compute_oauth_hmac(params, secret)
    return hmac.compare_digest(provided.lower(), expected)


# Webhook 签名（base64），X-Shopify-Hmac-Sha256
def compute_webhook_hmac(raw_body: bytes, secret: str | None = None) -> str:
    key = (secret if secret is not None else _app_secret()).encode("utf-8")
    digest = hmac.new(key, raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_hmac(provided_b64: str, raw_body: bytes, secret: str | None = None) -> bool:
    if not provided_b64:
        return False
    return hmac.compare_digest(provided_b64, compute_webhook_hmac(raw_body, secret))
