
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from syncbridge.core.config import settings
from syncbridge.core.logging import configure_logging
from syncbridge.db.session import dispose_engine
from syncbridge.api.v1 import api_v1
from syncbridge.services.errors import SyncBridgeError

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)

# 从环境读取前端白名单（逗号分隔）。本地可配：
# BACKEND_CORS_ORIGINS=http://localhost:5173,https://app.local.test:5173
origins = settings.cors_origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,     # 配成明确白名单（本地 http://localhost:5173，线上是前端域名）
    allow_credentials=True,    # Access-Control-Allow-Credentials: true（会话在 Cookie 里）
    allow_methods=["GET","POST","PUT","PATCH","DELETE","OPTIONS"],
    allow_headers=["*"],
    )


# Origin 校验（仅对改数据方法）。放行第三方服务器回调（Shopify Webhook / OAuth 回调）
TRUSTED = set(origins)
WEBHOOK_PATH_PREFIXES = (
    f"{settings.API_PREFIX}/webhooks/shopify",
    f"{settings.API_PREFIX}/auth/callback",
)

@app.middleware("http")
async def origin_check(request: Request, call_next):
    p = request.url.path

    if p.startswith(WEBHOOK_PATH_PREFIXES):
        # 服务器回调不在浏览器上下文，不适用 Origin 校验
        return await call_next(request)

    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        origin = request.headers.get("origin")
        # 没有 Origin（如 curl/健康检查）则放行
        if origin and origin not in TRUSTED:
            return JSONResponse(status_code=403, content={"error": "bad_origin", "detail": "Bad Origin"})

    return await call_next(request)


# 业务异常 → {"error": code, "detail": message}
@app.exception_handler(SyncBridgeError)
async def sync_bridge_error_handler(request: Request, exc: SyncBridgeError):
    if exc.status_code >= 500:
        logger.warning("api.error path=%s code=%s msg=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


app.include_router(api_v1, prefix=settings.API_PREFIX)


@app.on_event("shutdown")
def _release_pool():
    dispose_engine()

# 根路径健康探活（方便测试或 Docker 健康检查）
@app.get("/")
def root():
    return {
        "app": settings.PROJECT_NAME,
        "env": settings.ENVIRONMENT,
        "ok": True
    }
