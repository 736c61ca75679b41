"""
OAuth 握手：state 一次性 + HMAC + token 交换（注入假 exchange）
"""
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from syncbridge.core.config import settings
from syncbridge.core.security import compute_oauth_hmac
from syncbridge.db.model.connection import DISABLED_SOURCE_UNAUTHORIZED, STATUS_ACTIVE
from syncbridge.db.model.invite import INVITE_ACCEPTED
from syncbridge.integrations.errors import ConnectorError
from syncbridge.repository import connection_repo, installation_repo, invite_repo
from syncbridge.services import installation_service, invite_service
from syncbridge.services.errors import (
    InvalidShopDomain, NotFoundError, SignatureInvalid, StateExpired, StateMismatch, TokenExchangeFailed,
)
from syncbridge.utils.clock import now_utc
from syncbridge.utils.secrets import decrypt_value


NEW_SHOP = "newstore.myshopify.com"
RETAILER_SHOP = "retailer.myshopify.com"


def _signed(shop, state, code="auth-code"):
    params = {"code": code, "shop": shop, "state": state, "timestamp": "1767225600"}
    params["hmac"] = compute_oauth_hmac(params)
    return params


def _exchange(token="shpat_fresh", scope="read_products,write_products"):
    calls = []

    def _do(shop, code):
        calls.append((shop, code))
        return {"access_token": token, "scope": scope}

    _do.calls = calls
    return _do


class FakeWebhookStore:
    instances = []

    def __init__(self, shop, token):
        self.shop, self.token = shop, token
        self.registered = None
        FakeWebhookStore.instances.append(self)

    def ensure_webhooks(self, callback, topics):
        self.registered = (callback, tuple(topics))
        return [{"topic": t, "action": "created"} for t in topics]


def _complete(db, shop, state, **kw):
    kw.setdefault("exchange", _exchange())
    return installation_service.complete_authorization(db, shop, state, "auth-code", _signed(shop, state), **kw)


# ---------- begin ----------
def test_begin_builds_authorize_url_with_state(db):
    redirect = installation_service.begin_authorization(db, "NewStore.myshopify.com")

    url = urlparse(redirect.url)
    qs = parse_qs(url.query)
    assert url.netloc == NEW_SHOP
    assert url.path.endswith("/admin/oauth/authorize")
    assert qs["state"] == [redirect.state]
    assert qs["client_id"] == [settings.SHOPIFY_API_KEY]
    assert qs["redirect_uri"] == [installation_service.redirect_uri()]


@pytest.mark.parametrize("shop", ["", "evil.com", "shop.myshopify.com.evil.com", "-bad.myshopify.com"])
def test_begin_rejects_bad_shop(db, shop):
    with pytest.raises(InvalidShopDomain):
        installation_service.begin_authorization(db, shop)


# ---------- complete ----------
def test_complete_creates_installation_with_encrypted_token(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    exchange = _exchange()

    result = _complete(db, NEW_SHOP, state, exchange=exchange)

    assert result.created is True
    assert exchange.calls == [(NEW_SHOP, "auth-code")]
    row = installation_repo.get_by_shop(db, NEW_SHOP)
    assert row.access_token != "shpat_fresh"
    assert decrypt_value(row.access_token) == "shpat_fresh"
    status = installation_service.get_installation_status(db, NEW_SHOP)
    assert status.installed and status.has_access_token and not status.needs_reinstall
    assert status.scopes == ["read_products", "write_products"]


def test_state_is_single_use(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    _complete(db, NEW_SHOP, state)

    with pytest.raises(StateMismatch):
        _complete(db, NEW_SHOP, state)


def test_unknown_state_is_rejected(db):
    with pytest.raises(StateMismatch):
        _complete(db, NEW_SHOP, "never-issued")


def test_state_for_other_shop_is_rejected(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    with pytest.raises(StateMismatch):
        _complete(db, "other.myshopify.com", state)


def test_expired_state_is_rejected(db):
    installation_repo.create_state(db, "old-state", NEW_SHOP, expires_at=now_utc() - timedelta(seconds=1))
    with pytest.raises(StateExpired):
        _complete(db, NEW_SHOP, "old-state")


def test_bad_hmac_is_rejected_before_exchange(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    params = _signed(NEW_SHOP, state)
    params["hmac"] = "0" * 64
    exchange = _exchange()

    with pytest.raises(SignatureInvalid):
        installation_service.complete_authorization(db, NEW_SHOP, state, "auth-code", params, exchange=exchange)

    assert exchange.calls == []
    assert installation_repo.get_by_shop(db, NEW_SHOP) is None


def test_token_exchange_failure(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state

    def _boom(shop, code):
        raise ConnectorError("400 invalid_request", status_code=400, body='{"error":"invalid_request"}')

    with pytest.raises(TokenExchangeFailed) as exc:
        _complete(db, NEW_SHOP, state, exchange=_boom)
    assert "invalid_request" in exc.value.upstream_body


def test_exchange_without_token_fails(db):
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    with pytest.raises(TokenExchangeFailed):
        _complete(db, NEW_SHOP, state, exchange=lambda shop, code: {"scope": "read_products"})


def test_reinstall_replaces_token_and_restores_connections(db, installation, connection):
    installation_repo.clear_token(db, installation.id)
    connection_repo.disable_for_installation(db, installation.id, DISABLED_SOURCE_UNAUTHORIZED)
    state = installation_service.begin_authorization(db, installation.shop_domain).state

    result = _complete(db, installation.shop_domain, state, exchange=_exchange(token="shpat_second"))

    assert result.created is False
    assert decrypt_value(installation_repo.get(db, installation.id).access_token) == "shpat_second"
    conn = connection_repo.get(db, connection.id)
    assert (conn.status, conn.disabled_reason) == (STATUS_ACTIVE, None)


# ---------- webhooks ----------
def test_webhooks_registered_on_first_install(db, monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_WEBHOOK_HOST", "https://hooks.syncbridge.test/")
    FakeWebhookStore.instances.clear()
    state = installation_service.begin_authorization(db, NEW_SHOP).state

    result = _complete(db, NEW_SHOP, state, store_factory=FakeWebhookStore)

    [store] = FakeWebhookStore.instances
    assert store.token == "shpat_fresh"
    assert store.registered[0] == f"https://hooks.syncbridge.test{settings.API_PREFIX}/webhooks/shopify"
    assert "APP_UNINSTALLED" in store.registered[1]
    assert len(result.webhooks) == len(installation_service.WEBHOOK_TOPICS)
    assert installation_service.get_installation_status(db, NEW_SHOP).webhooks_registered is True


def test_webhook_registration_skipped_without_host(db, monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_WEBHOOK_HOST", None)
    state = installation_service.begin_authorization(db, NEW_SHOP).state
    assert _complete(db, NEW_SHOP, state).webhooks is None


def test_webhook_registration_failure_does_not_block_install(db, installation, monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_WEBHOOK_HOST", "https://hooks.syncbridge.test")

    class Failing(FakeWebhookStore):
        def ensure_webhooks(self, callback, topics):
            raise ConnectorError("503 unavailable", status_code=503)

    assert installation_service.register_webhooks(db, installation, "tok", store_factory=Failing) is None
    row = installation_repo.get(db, installation.id)
    assert row.webhooks_registered_at is None
    assert "webhook registration failed" in row.webhook_error


# ---------- 邀请 ----------
def test_invite_flow_creates_connection_for_inviter(db, installation):
    invite = invite_service.create_invite(db, installation, "Retailer", "retailer")
    state = installation_service.begin_authorization(db, RETAILER_SHOP, invite_token=invite.token).state

    result = _complete(db, RETAILER_SHOP, state, exchange=_exchange(token="shpat_retailer"))

    conn = connection_repo.get(db, result.invite_connection_id)
    assert conn.installation_id == installation.id
    assert conn.dest_shop_domain == RETAILER_SHOP
    assert decrypt_value(conn.dest_access_token) == "shpat_retailer"
    assert invite_repo.get(db, invite.id).status == INVITE_ACCEPTED
    assert result.webhooks is None


def test_begin_with_used_invite_fails(db, installation):
    with pytest.raises(NotFoundError):
        installation_service.begin_authorization(db, RETAILER_SHOP, invite_token="no-such-token")


# ---------- 卸载 ----------
def test_uninstall_drops_token_but_keeps_row(db, installation):
    installation_service.mark_uninstalled(db, installation.shop_domain)

    status = installation_service.get_installation_status(db, installation.shop_domain)
    assert (status.installed, status.has_access_token, status.needs_reinstall) == (False, False, True)
    assert installation_repo.get_by_shop(db, installation.shop_domain).uninstalled_at is not None


def test_uninstall_unknown_shop_is_noop(db):
    assert installation_service.mark_uninstalled(db, "ghost.myshopify.com") is None
    assert installation_service.get_installation_status(db, "ghost.myshopify.com").installed is False

