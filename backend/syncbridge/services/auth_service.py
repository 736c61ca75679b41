
from typing import Optional

from fastapi import Depends, HTTPException, status, Request, Response
from sqlalchemy.orm import Session
from syncbridge.db.session import get_db
from syncbridge.core.security import create_access_token, decode_token
from syncbridge.core.config import settings
from syncbridge.db.model.installation import Installation
from syncbridge.repository import installation_repo


COOKIE_NAME = settings.COOKIE_NAME

# 统一 Cookie 策略：
# - 线上/云环境：Secure=True
# - OAuth 回调是从 Shopify 跳回来的顶层导航，SameSite 必须是 Lax（Strict 会丢 Cookie）
COOKIE_DOMAIN = settings.COOKIE_DOMAIN or None
COOKIE_SAMESITE = settings.COOKIE_SAMESITE


'''
设置店铺会话 Cookie
    - 只有一枚 Cookie，过期取决于 ACCESS_TOKEN_EXPIRE_MINUTES
    - JWT 里只放 shop 域名；没有服务端会话
'''
def set_session_cookie(resp: Response, shop_domain: str) -> str:
    expires_minutes = int(settings.ACCESS_TOKEN_EXPIRE_MINUTES or 480)
    token = create_access_token({"shop": shop_domain}, expires_minutes=expires_minutes)
    resp.set_cookie(
        key=COOKIE_NAME,
        value=token,
        max_age=expires_minutes * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
        domain=COOKIE_DOMAIN,
        path="/",
    )
    return token


def clear_cookie(response: Response) -> None:
    response.delete_cookie(key=COOKIE_NAME, domain=COOKIE_DOMAIN, path="/")


def _token_from_request(request: Request) -> Optional[str]:
    raw = request.cookies.get(COOKIE_NAME)
    if raw:
        return raw
    auth = request.headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


'''
获取当前店铺（受保护路由的依赖）
    - Cookie 优先，其次 Authorization: Bearer
    - 只校验会话；token 是否已被撤销由业务层（NeedsReinstall）判断
'''
def get_current_shop(request: Request, db: Session = Depends(get_db)) -> Installation:
    raw = _token_from_request(request)
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(raw)
    if not payload or "shop" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    installation = installation_repo.get_by_shop(db, payload["shop"])
    if installation is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Shop not installed")
    return installation
