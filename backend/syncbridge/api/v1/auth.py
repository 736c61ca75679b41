

from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from syncbridge.core.config import settings
from syncbridge.db.model.installation import Installation
from syncbridge.db.session import get_db
from syncbridge.services import installation_service
from syncbridge.services.auth_service import clear_cookie, get_current_shop, set_session_cookie


router = APIRouter(prefix="/auth", tags=["auth"])


class InstallationOut(BaseModel):
    shop: str
    installed: bool
    has_access_token: bool
    needs_reinstall: bool
    scopes: List[str]
    webhooks_registered: bool


'''
安装入口：/auth?shop=xxx.myshopify.com[&invite=token]
   - 生成一次性 state 后 302 到 Shopify 授权页
'''
@router.get("")
def begin(
    shop: str = Query(..., description="xxx.myshopify.com"),
    invite: Optional[str] = Query(None, description="invite token (retailer onboarding)"),
    db: Session = Depends(get_db),
):
    redirect = installation_service.begin_authorization(db, shop, invite_token=invite)
    return RedirectResponse(redirect.url, status_code=302)


'''
OAuth 回调：Shopify 带着 code/state/hmac 跳回来
   - 安装：签发店铺会话 Cookie 后跳前端
   - 邀请：对方店铺只是授权给邀请方，不发会话，跳到完成页
'''
@router.get("/callback")
def callback(request: Request, db: Session = Depends(get_db)):
    params = dict(request.query_params)
    result = installation_service.complete_authorization(
        db,
        params.get("shop", ""),
        params.get("state", ""),
        params.get("code", ""),
        params,
    )

    app_url = settings.APP_URL.rstrip("/")
    if result.invite_connection_id:
        return RedirectResponse(f"{app_url}/connect/done?connection={result.invite_connection_id}", status_code=302)

    resp = RedirectResponse(f"{app_url}/", status_code=302)
    set_session_cookie(resp, result.installation.shop_domain)
    return resp


@router.post("/logout")
def logout(response: Response):
    clear_cookie(response)
    return {"ok": True}


@router.get("/me", response_model=InstallationOut)
def me(current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    return InstallationOut(**asdict(installation_service.get_installation_status(db, current.shop_domain)))
