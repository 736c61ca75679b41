# 环境变量和配置
# pydantic‑settings 读取 .env = core/config.py

from typing import List, Optional
from pydantic import SecretStr, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 本机直接跑 uvicorn / celery 时（不走 Docker），才会用到 model_config.env_file=".env"：
# 此时它会读取 backend/.env

class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",
        case_sensitive=False,
    )

    # ========= project config =========
    PROJECT_NAME: str = "SyncBridge Hub"
    ENVIRONMENT: str = "dev"
    API_PREFIX: str = "/api/v1"
    APP_URL: str = Field("http://localhost:8000", alias="APP_URL", description="Public base URL, used for OAuth redirect / invite links")


    # ========= 会话 / 鉴权 / CORS =========
    SECRET_KEY: str = Field("CHANGE_ME", alias="SECRET_KEY")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(480, alias="ACCESS_TOKEN_EXPIRE_MINUTES")   # 8h
    COOKIE_NAME: str = Field("shop_session", alias="COOKIE_NAME")
    COOKIE_DOMAIN: Optional[str] = Field(None, alias="COOKIE_DOMAIN")
    COOKIE_SECURE: bool = Field(False, alias="COOKIE_SECURE")                            # 生产时改 True
    COOKIE_SAMESITE: str = Field("Lax", alias="COOKIE_SAMESITE")                         # OAuth 回调跳转需要 Lax
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"


    # ========= Database =========
    DATABASE_URL: str = Field(
        default="postgresql+psycopg://sb_user:sb_pass@db:5432/syncbridge_dev",
        alias="DATABASE_URL"
    )


    # ========= celery config =========
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None
    CELERY_TIMEZONE: str = "UTC"
    SYNC_TASKS_INLINE: bool = Field(default=False, alias="SYNC_TASKS_INLINE")   # 调试开关：同进程内直接跑 job


    # ========= Shopify App (OAuth) =========
    SHOPIFY_API_KEY: str = Field("", alias="SHOPIFY_API_KEY")
    SHOPIFY_API_SECRET: SecretStr = Field(SecretStr(""), alias="SHOPIFY_API_SECRET")
    SHOPIFY_SCOPES: str = Field(
        "read_products,write_products,read_inventory,write_inventory,read_locations",
        alias="SHOPIFY_SCOPES",
    )
    SHOPIFY_API_VERSION: str = Field("2025-07", alias="SHOPIFY_API_VERSION")
    OAUTH_STATE_TTL_SEC: int = Field(300, ge=30, alias="OAUTH_STATE_TTL_SEC")     # 握手 state 5 分钟有效
    # webhook 配置：回调 host 为空时跳过注册
    SHOPIFY_WEBHOOK_HOST: Optional[str] = Field(None, alias="SHOPIFY_WEBHOOK_HOST")

    # 网络/HTTP 层 配置
    SHOPIFY_HTTP_TIMEOUT: int = Field(30, alias="SHOPIFY_HTTP_TIMEOUT")
    SHOPIFY_PAGE_SIZE: int = Field(100, ge=1, le=250, alias="SHOPIFY_PAGE_SIZE")


    # ========= WooCommerce =========
    WOO_HTTP_TIMEOUT: int = Field(30, alias="WOO_HTTP_TIMEOUT")
    WOO_PAGE_SIZE: int = Field(100, ge=1, le=100, alias="WOO_PAGE_SIZE")


    # ========= 密钥加密 =========
    # 为空时由 SECRET_KEY 经 PBKDF2 派生
    ENCRYPTION_KEY: Optional[SecretStr] = Field(None, alias="ENCRYPTION_KEY")


    # ========= sync tuning =========
    SYNC_ITEM_MAX_ATTEMPTS: int = Field(5, ge=1, alias="SYNC_ITEM_MAX_ATTEMPTS")         # 单个 item 最大尝试次数
    SYNC_JOB_RETRY_CEILING: int = Field(3, ge=1, alias="SYNC_JOB_RETRY_CEILING")         # job 最多跑几次，超出即 dead
    SYNC_BACKOFF_BASE_SEC: float = Field(1.0, alias="SYNC_BACKOFF_BASE_SEC")
    SYNC_BACKOFF_MULTIPLIER: float = Field(2.0, alias="SYNC_BACKOFF_MULTIPLIER")
    SYNC_BACKOFF_MAX_SEC: float = Field(30.0, alias="SYNC_BACKOFF_MAX_SEC")
    SYNC_BACKOFF_JITTER: float = Field(0.3, ge=0, le=1, alias="SYNC_BACKOFF_JITTER")
    SYNC_LIST_RETRIES: int = Field(1, ge=0, alias="SYNC_LIST_RETRIES")                   # 读请求在连接器内的重试次数（阻塞）
    SYNC_LIST_RETRY_MAX_SLEEP_SEC: float = Field(5.0, gt=0, alias="SYNC_LIST_RETRY_MAX_SLEEP_SEC")  # 超过这个等待直接抛出，交给 countdown
    SYNC_JOB_RETRY_DELAY_SEC: int = Field(300, alias="SYNC_JOB_RETRY_DELAY_SEC")         # 失败 job 重新入队的基础间隔
    SYNC_PARTIAL_FAILURE_RATIO: float = Field(0.5, gt=0, le=1, alias="SYNC_PARTIAL_FAILURE_RATIO")
    SYNC_LIVENESS_DEADLINE_SEC: int = Field(15 * 60, ge=60, alias="SYNC_LIVENESS_DEADLINE_SEC")
    SYNC_PREVIEW_LIMIT: int = Field(50, ge=1, alias="SYNC_PREVIEW_LIMIT")
    SYNC_SCHEDULE_HOURS: str = Field("1,9,17", alias="SYNC_SCHEDULE_HOURS")              # 定时全量同步（UTC 小时）
    SYNC_SCHEDULE_WINDOW_MINUTES: int = Field(5, ge=1, le=59, alias="SYNC_SCHEDULE_WINDOW_MINUTES")


    # ========= telemetry =========
    HEALTH_WINDOW_HOURS: int = Field(24, ge=1, alias="HEALTH_WINDOW_HOURS")
    HEALTH_ERROR_RATIO_THRESHOLD: float = Field(0.1, gt=0, le=1, alias="HEALTH_ERROR_RATIO_THRESHOLD")
    LOG_EXPORT_LIMIT: int = Field(10000, ge=1, alias="LOG_EXPORT_LIMIT")
    HISTORY_DEFAULT_LIMIT: int = Field(10, ge=1, alias="HISTORY_DEFAULT_LIMIT")
    SYNC_LOG_RETENTION_DAYS: int = Field(30, ge=1, alias="SYNC_LOG_RETENTION_DAYS")     # sync_logs 与已结束 job 的 items 保留天数


    # ========= invites =========
    INVITE_TTL_DAYS: int = Field(7, ge=1, alias="INVITE_TTL_DAYS")


    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.BACKEND_CORS_ORIGINS.split(",") if o.strip()]

    @property
    def schedule_hours(self) -> List[int]:
        return sorted({int(h) for h in self.SYNC_SCHEDULE_HOURS.split(",") if h.strip()})


settings = Settings()  # 只从环境读取（含 .env）
