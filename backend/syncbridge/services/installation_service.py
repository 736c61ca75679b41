"""
安装 / token 生命周期（源店铺 OAuth）
  begin_authorization    → 生成一次性 state，返回 Shopify authorize URL
  complete_authorization → 校验 state + HMAC → 换 token → upsert installation → 注册 webhooks / 接受邀请
  mark_uninstalled       → app/uninstalled webhook：丢弃 token，保留记录
"""
from __future__ import annotations

import logging, secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.core.security import verify_oauth_hmac
from syncbridge.db.model.connection import DISABLED_SOURCE_UNAUTHORIZED
from syncbridge.db.model.installation import Installation
from syncbridge.db.model.sync_log import CODE_UNAUTHORIZED
from syncbridge.integrations.errors import ConnectorError
from syncbridge.integrations.shopify import oauth as shopify_oauth
from syncbridge.integrations.shopify.shopify_store import ShopifyStore
from syncbridge.repository import connection_repo, installation_repo, invite_repo
from syncbridge.services import invite_service, sync_log
from syncbridge.services.errors import (
    InvalidShopDomain, SignatureInvalid, StateExpired, StateMismatch, TokenExchangeFailed,
)
from syncbridge.utils.clock import now_utc
from syncbridge.utils.secrets import encrypt_value
from syncbridge.utils.shop_domain import is_valid_shop_domain


logger = logging.getLogger(__name__)

WEBHOOK_TOPICS = (
    "PRODUCTS_CREATE",
    "PRODUCTS_UPDATE",
    "PRODUCTS_DELETE",
    "INVENTORY_LEVELS_UPDATE",
    "APP_UNINSTALLED",
)


@dataclass(slots=True)
class AuthorizationRedirect:
    url: str
    state: str


@dataclass(slots=True)
class AuthorizationResult:
    installation: Installation
    created: bool
    invite_connection_id: Optional[str] = None
    webhooks: Optional[List[Dict[str, Any]]] = None


@dataclass(slots=True)
class InstallationStatus:
    shop: str
    installed: bool
    has_access_token: bool
    needs_reinstall: bool
    scopes: List[str]
    webhooks_registered: bool


def validate_shop_domain(shop_domain: Optional[str]) -> str:
    shop = (shop_domain or "").strip().lower()
    if not is_valid_shop_domain(shop):
        raise InvalidShopDomain(f"invalid shop domain: {shop_domain!r}")
    return shop


def redirect_uri() -> str:
    return f"{settings.APP_URL.rstrip('/')}{settings.API_PREFIX}/auth/callback"


def webhook_callback_url() -> Optional[str]:
    host = (settings.SHOPIFY_WEBHOOK_HOST or "").strip().rstrip("/")
    return f"{host}{settings.API_PREFIX}/webhooks/shopify" if host else None


# ---------- begin ----------
def begin_authorization(db: Session, shop_domain: str, invite_token: Optional[str] = None) -> AuthorizationRedirect:
    try:
        shop = validate_shop_domain(shop_domain)
    except InvalidShopDomain as e:
        sync_log.error(db, e.message, code=e.code, shop_domain=(shop_domain or "")[:255])
        raise

    installation_repo.purge_expired_states(db)

    invite_id = None
    if invite_token:
        invite = invite_service.get_pending_invite(db, invite_token)
        invite_id = invite.id

    now = now_utc()
    state = secrets.token_hex(16)
    installation_repo.create_state(
        db, state, shop,
        expires_at=now + timedelta(seconds=settings.OAUTH_STATE_TTL_SEC),
        invite_id=invite_id,
    )
    logger.info("oauth.begin shop=%s invite=%s", shop, invite_id)
    return AuthorizationRedirect(url=shopify_oauth.build_authorize_url(shop, state, redirect_uri()), state=state)


# ---------- complete ----------
"""
  回调：任何一步失败都先写 sync_logs 再抛
    - state 不存在/已被消费 → StateMismatch；过期 → StateExpired；shop 不一致 → StateMismatch
    - HMAC 不对 → SignatureInvalid
    - token 交换失败 → TokenExchangeFailed（upstream body 只进日志）
"""
def complete_authorization(
    db: Session,
    shop_domain: str,
    returned_state: str,
    code: str,
    signed_params: Mapping[str, Any],
    *,
    exchange: Optional[Callable[[str, str], Dict[str, Any]]] = None,
    store_factory: Optional[Callable[[str, str], ShopifyStore]] = None,
) -> AuthorizationResult:
    shop_for_log = (shop_domain or "")[:255]
    try:
        shop = validate_shop_domain(shop_domain)

        state_row = installation_repo.consume_state(db, returned_state or "")
        now = now_utc()
        installation_repo.purge_expired_states(db, now)
        if state_row is None:
            raise StateMismatch("oauth state not found or already used")
        if state_row.expires_at < now:
            raise StateExpired("oauth state expired")
        if state_row.shop_domain != shop:
            raise StateMismatch("oauth state was issued for a different shop")

        if not verify_oauth_hmac(signed_params):
            raise SignatureInvalid("oauth callback signature invalid")

        token_payload = _exchange_code(shop, code, exchange or shopify_oauth.exchange_code_for_token)
    except (InvalidShopDomain, StateMismatch, StateExpired, SignatureInvalid) as e:
        sync_log.error(db, e.message, code=e.code, shop_domain=shop_for_log)
        raise
    except TokenExchangeFailed as e:
        sync_log.error(db, e.message, code=e.code, shop_domain=shop_for_log, details={"upstream_body": (e.upstream_body or "")[:1000]})
        raise

    access_token = token_payload["access_token"]
    installation, created = installation_repo.upsert_token(
        db, shop, encrypt_value(access_token), token_payload.get("scope")
    )
    restored = connection_repo.reactivate_disabled(db, reason=DISABLED_SOURCE_UNAUTHORIZED, installation_id=installation.id)
    logger.info("oauth.complete shop=%s created=%s restored_connections=%s", shop, created, restored)

    result = AuthorizationResult(installation=installation, created=created)

    if state_row.invite_id:
        invite = invite_repo.get(db, state_row.invite_id)
        if invite is not None:
            conn = invite_service.accept_invite(db, invite, access_token, dest_shop_domain=shop)
            result.invite_connection_id = conn.id
        return result

    if created or installation.webhooks_registered_at is None:
        result.webhooks = register_webhooks(db, installation, access_token, store_factory=store_factory)
    return result


def _exchange_code(shop: str, code: str, exchange: Callable[[str, str], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        payload = exchange(shop, code)
    except ConnectorError as e:
        raise TokenExchangeFailed(upstream_body=e.body or str(e)) from e
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise TokenExchangeFailed("token endpoint returned no access_token", upstream_body=str(payload)[:1000])
    return payload


"""
  幂等注册 webhooks；失败只记录（sync_logs + installations.webhook_error），不影响安装
"""
def register_webhooks(
    db: Session,
    installation: Installation,
    access_token: str,
    *,
    store_factory: Optional[Callable[[str, str], ShopifyStore]] = None,
) -> Optional[List[Dict[str, Any]]]:
    callback = webhook_callback_url()
    if not callback:
        logger.info("webhook.register.skipped shop=%s reason=no_webhook_host", installation.shop_domain)
        return None

    store = (store_factory or ShopifyStore)(installation.shop_domain, access_token)
    try:
        results = store.ensure_webhooks(callback, WEBHOOK_TOPICS)
    except ConnectorError as e:
        msg = f"webhook registration failed: {e}"
        installation_repo.set_webhook_result(db, installation.id, registered_at=None, error=msg[:2000])
        sync_log.error(db, msg, code="webhook_registration_failed", shop_domain=installation.shop_domain)
        return None

    installation_repo.set_webhook_result(db, installation.id, registered_at=now_utc(), error=None)
    logger.info("webhook.register.ok shop=%s actions=%s", installation.shop_domain, [r.get("action") for r in results])
    return results


# ---------- status / uninstall ----------
def get_installation_status(db: Session, shop_domain: str) -> InstallationStatus:
    shop = (shop_domain or "").strip().lower()
    row = installation_repo.get_by_shop(db, shop)
    if row is None:
        return InstallationStatus(shop=shop, installed=False, has_access_token=False, needs_reinstall=True, scopes=[], webhooks_registered=False)
    return InstallationStatus(
        shop=row.shop_domain,
        installed=row.uninstalled_at is None,
        has_access_token=bool(row.access_token),
        needs_reinstall=row.needs_reinstall,
        scopes=[s.strip() for s in (row.scopes or "").split(",") if s.strip()],
        webhooks_registered=row.webhooks_registered_at is not None,
    )


def mark_uninstalled(db: Session, shop_domain: str) -> Optional[Installation]:
    row = installation_repo.mark_uninstalled(db, shop_domain)
    if row is None:
        logger.warning("app.uninstalled.unknown_shop shop=%s", shop_domain)
        return None
    sync_log.warn(db, "app uninstalled; access token dropped", code=CODE_UNAUTHORIZED, shop_domain=shop_domain)
    return row
