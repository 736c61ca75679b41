"""connection 增改 / 模板 / 邀请"""
from datetime import timedelta

import pytest

from syncbridge.db.model.connection import (
    DISABLED_DESTINATION_UNAUTHORIZED, DISABLED_SOURCE_UNAUTHORIZED, STATUS_ACTIVE, STATUS_DISABLED,
)
from syncbridge.db.model.invite import INVITE_ACCEPTED, INVITE_EXPIRED, INVITE_PENDING
from syncbridge.db.model.sync_job import JOB_FULL_SYNC, TRIGGER_MANUAL
from syncbridge.orchestration.connection_sync import job_scheduler
from syncbridge.repository import connection_repo, invite_repo
from syncbridge.services import connection_service, invite_service, template_service
from syncbridge.services.errors import AlreadyExists, NotFoundError, ValidationError
from syncbridge.utils.clock import now_utc
from syncbridge.utils.secrets import decrypt_value


WOO = {
    "name": "Woo retailer",
    "platform": "woocommerce",
    "base_url": "https://shop.example.com/wp-json/",
    "consumer_key": "ck_1234567890abcd",
    "consumer_secret": "cs_secret_value",
}


# ---------- connections ----------
def test_shopify_connection_token_is_encrypted_and_hidden(db, installation, connection):
    assert connection.dest_access_token != "shpat_dest_token"
    assert decrypt_value(connection.dest_access_token) == "shpat_dest_token"

    summary = connection_service.to_summary(connection)
    assert summary["type"] == "shopify"
    assert summary["destination"] == "retailer.myshopify.com"
    assert summary["has_access_token"] is True
    assert "shpat" not in str(summary)


def test_woocommerce_connection_normalizes_and_masks(db, installation, make_connection):
    conn = make_connection(installation, **{k: v for k, v in WOO.items()})

    assert conn.base_url == "https://shop.example.com"
    assert decrypt_value(conn.consumer_secret) == "cs_secret_value"
    summary = connection_service.to_summary(conn)
    assert summary["consumer_key"] == "********abcd"
    assert summary["has_consumer_secret"] is True
    assert "cs_secret_value" not in str(summary)


def test_duplicate_destination_rejected(db, installation, connection, make_connection):
    with pytest.raises(AlreadyExists):
        make_connection(installation, name="Again", dest_shop_domain="RETAILER.myshopify.com")


@pytest.mark.parametrize("overrides", [
    {"name": "  "},
    {"dest_shop_domain": "retailer.example.com"},
    {"dest_access_token": ""},
    {"platform": "magento"},
    {"mapping_rules": {"price_multiplier": "lots"}},
    {"surprise": True},
])
def test_create_validation(db, installation, make_connection, overrides):
    with pytest.raises(ValidationError):
        make_connection(installation, **overrides)


def test_woocommerce_needs_scheme_and_secret(db, installation, make_connection):
    with pytest.raises(ValidationError):
        make_connection(installation, **{**WOO, "base_url": "shop.example.com"})
    with pytest.raises(ValidationError):
        make_connection(installation, **{**WOO, "consumer_secret": None})


def test_update_rules_and_keep_secret_when_blank(db, installation, connection):
    before = connection.dest_access_token
    conn = connection_service.update_connection(db, installation, connection.id, {
        "sync_tags": True,
        "mapping_rules": {"price_multiplier": 1.2},
        "dest_access_token": "",
    })
    assert conn.sync_tags is True
    assert conn.mapping_rules == {"price_multiplier": 1.2}
    assert conn.dest_access_token == before


def test_new_destination_token_reactivates_credential_disable(db, installation, connection):
    connection_repo.set_status(db, connection.id, STATUS_DISABLED, disabled_reason=DISABLED_DESTINATION_UNAUTHORIZED)

    conn = connection_service.update_connection(db, installation, connection.id, {"dest_access_token": "shpat_new"})

    assert (conn.status, conn.disabled_reason) == (STATUS_ACTIVE, None)
    assert decrypt_value(conn.dest_access_token) == "shpat_new"


def test_new_destination_token_does_not_fix_source_disable(db, installation, connection):
    connection_repo.set_status(db, connection.id, STATUS_DISABLED, disabled_reason=DISABLED_SOURCE_UNAUTHORIZED)
    conn = connection_service.update_connection(db, installation, connection.id, {"dest_access_token": "shpat_new"})
    assert conn.status == STATUS_DISABLED


def test_update_rejects_non_editable_fields(db, installation, connection):
    with pytest.raises(ValidationError):
        connection_service.update_connection(db, installation, connection.id, {"status": "active"})


def test_connections_are_scoped_to_installation(db, installation, connection, make_installation):
    other = make_installation("other.myshopify.com")
    with pytest.raises(NotFoundError):
        connection_service.get_connection(db, other, connection.id)
    assert connection_service.list_connection_summaries(db, other) == []


def test_summary_reports_active_job(db, installation, connection, dispatcher):
    job_scheduler.enqueue(db, connection.id, JOB_FULL_SYNC, TRIGGER_MANUAL, dispatcher=dispatcher)

    [summary] = connection_service.list_connection_summaries(db, installation)
    assert summary["active_job_state"] == "queued"
    assert summary["synced_items"] == 0


# ---------- 模板 ----------
def test_template_never_stores_secrets(db, installation):
    tpl = template_service.create_template(
        db, installation, name="Woo base", platform="woocommerce",
        config={**WOO, "sync_tags": True},
    )
    assert "consumer_secret" not in tpl.config
    assert "name" not in tpl.config
    assert tpl.config["consumer_key"] == WOO["consumer_key"]


def test_template_from_connection_and_instantiate(db, installation, connection):
    connection_service.update_connection(db, installation, connection.id, {"sync_collections": True, "dest_location_id": "gid://shopify/Location/1"})
    tpl = template_service.create_template_from_connection(db, installation, connection.id, "Retailer base")
    assert tpl.config["sync_collections"] is True
    assert "dest_access_token" not in tpl.config

    with pytest.raises(ValidationError):
        template_service.instantiate_template(db, installation, tpl.id, "Copy", secret=" ")

    conn = template_service.instantiate_template(
        db, installation, tpl.id, "Copy", secret="shpat_copy",
        overrides={"dest_shop_domain": "copy.myshopify.com"},
    )
    assert conn.dest_shop_domain == "copy.myshopify.com"
    assert conn.sync_collections is True
    assert conn.dest_location_id == "gid://shopify/Location/1"
    assert decrypt_value(conn.dest_access_token) == "shpat_copy"


def test_template_validation_and_delete(db, installation, make_installation):
    with pytest.raises(ValidationError):
        template_service.create_template(db, installation, name="x", platform="bigcommerce", config={})
    with pytest.raises(ValidationError):
        template_service.create_template(db, installation, name="x", platform="shopify", config={"mapping_rules": {"price_multiplier": "x"}})

    tpl = template_service.create_template(db, installation, name="x", platform="shopify", config={})
    with pytest.raises(NotFoundError):
        template_service.delete_template(db, make_installation("other.myshopify.com"), tpl.id)
    template_service.delete_template(db, installation, tpl.id)
    assert template_service.list_templates(db, installation) == []


# ---------- 邀请 ----------
def test_invite_normalizes_shop_and_builds_install_url(db, installation):
    invite = invite_service.create_invite(db, installation, "Retailer", "https://Retailer.myshopify.com/", "ops@retailer.test")

    assert invite.dest_shop_domain == "retailer.myshopify.com"
    summary = invite_service.to_summary(invite)
    assert summary["status"] == INVITE_PENDING
    assert summary["install_url"].endswith(f"/connect?token={invite.token}")


@pytest.mark.parametrize("name, shop", [("", "retailer"), ("Retailer", "retailer.example.com")])
def test_invite_validation(db, installation, name, shop):
    with pytest.raises(ValidationError):
        invite_service.create_invite(db, installation, name, shop)


def test_list_invites_expires_stale(db, installation):
    invite = invite_service.create_invite(db, installation, "Retailer", "retailer")
    invite.expires_at = now_utc() - timedelta(minutes=1)
    db.commit()

    [row] = invite_service.list_invites(db, installation)
    assert row.status == INVITE_EXPIRED
    with pytest.raises(NotFoundError):
        invite_service.get_pending_invite(db, invite.token)


def test_accept_invite_is_idempotent_and_reuses_connection(db, installation, connection):
    invite = invite_service.create_invite(db, installation, "Retailer", "retailer")

    conn = invite_service.accept_invite(db, invite, "shpat_from_invite")
    again = invite_service.accept_invite(db, invite, "shpat_from_invite")

    # 同一目标已有 connection：复用并换 token
    assert conn.id == again.id == connection.id
    assert decrypt_value(connection_repo.get(db, conn.id).dest_access_token) == "shpat_from_invite"
    row = invite_repo.get(db, invite.id)
    assert (row.status, row.connection_id) == (INVITE_ACCEPTED, connection.id)
    with pytest.raises(NotFoundError):
        invite_service.get_pending_invite(db, invite.token)
