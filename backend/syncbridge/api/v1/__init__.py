from fastapi import APIRouter, Depends
from syncbridge.services.auth_service import get_current_shop


# 非受保护路由
from .routes_health import router as health_router
from .auth import router as auth_router
from .webhooks_shopify import router as webhooks_router      # HMAC 校验，不走会话


# 需要店铺会话的受保护路由
from .connections import router as connections_router
from .templates import router as templates_router
from .invites import router as invites_router
from .scheduler import router as scheduler_router


api_v1 = APIRouter()
api_v1.include_router(health_router)      # /health 不需要登录
api_v1.include_router(auth_router)        # /auth OAuth 安装 / 回调
api_v1.include_router(webhooks_router)    # /webhooks/shopify

# --- 需要店铺会话的接口 ---
protected = APIRouter(dependencies=[Depends(get_current_shop)])

protected.include_router(connections_router)
protected.include_router(templates_router)
protected.include_router(invites_router)
protected.include_router(scheduler_router)

# 把受保护路由注册进主路由
api_v1.include_router(protected)
