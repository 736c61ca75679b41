import pytest

from syncbridge.db.model.connection import STATUS_PAUSED
from syncbridge.db.model.sync_job import JOB_FULL_SYNC, JOB_INCREMENTAL, TRIGGER_WEBHOOK
from syncbridge.repository import connection_repo, installation_repo, sync_job_repo
from syncbridge.services import webhook_service


PRODUCT = {
    "id": 1001,
    "title": "Linen shirt",
    "variants": [{"sku": "SHIRT-M "}, {"sku": "SHIRT-L"}, {"sku": ""}, {"sku": "SHIRT-M"}],
}


def test_variant_skus_trimmed_and_unique():
    assert webhook_service.variant_skus(PRODUCT) == ["SHIRT-L", "SHIRT-M"]
    assert webhook_service.variant_skus({}) == []


def test_product_update_enqueues_incremental_per_connection(db, installation, connection, make_connection, dispatcher):
    paused = make_connection(installation, name="Paused", dest_shop_domain="paused.myshopify.com")
    connection_repo.set_status(db, paused.id, STATUS_PAUSED)

    out = webhook_service.handle_webhook(db, "products/update", installation.shop_domain, PRODUCT, dispatcher=dispatcher)

    assert out["action"] == JOB_INCREMENTAL
    assert out["skipped"] == {paused.id: "connection_paused"}
    [job_id] = out["jobs"]
    job = sync_job_repo.get(db, job_id)
    assert (job.connection_id, job.trigger, job.scope_skus) == (connection.id, TRIGGER_WEBHOOK, ["SHIRT-L", "SHIRT-M"])
    assert dispatcher.job_ids == [job_id]


def test_second_webhook_while_job_active_is_skipped(db, installation, connection, dispatcher):
    webhook_service.handle_webhook(db, "products/create", installation.shop_domain, PRODUCT, dispatcher=dispatcher)
    out = webhook_service.handle_webhook(db, "products/update", installation.shop_domain, PRODUCT, dispatcher=dispatcher)

    assert out["jobs"] == []
    assert out["skipped"] == {connection.id: "already_running"}


def test_inventory_update_enqueues_full_sync(db, installation, connection, dispatcher):
    out = webhook_service.handle_webhook(
        db, "INVENTORY_LEVELS/UPDATE", installation.shop_domain, {"inventory_item_id": 5}, dispatcher=dispatcher,
    )
    assert out["action"] == JOB_FULL_SYNC
    assert len(out["jobs"]) == 1


@pytest.mark.parametrize("topic, payload, expected", [
    ("products/update", {"variants": [{"sku": None}]}, {"action": "ignored", "reason": "no_skus"}),
    ("orders/create", {}, {"action": "ignored", "reason": "unsupported_topic"}),
    ("customers/redact", {"customer": {"id": 1}}, {"action": "acknowledged"}),
    ("shop/redact", {}, {"action": "acknowledged"}),
])
def test_topics_without_jobs(db, installation, connection, dispatcher, topic, payload, expected):
    out = webhook_service.handle_webhook(db, topic, installation.shop_domain, payload, dispatcher=dispatcher)
    assert {k: out[k] for k in expected} == expected
    assert dispatcher.job_ids == []


def test_unknown_shop_is_ignored(db, dispatcher):
    out = webhook_service.handle_webhook(db, "products/update", "ghost.myshopify.com", PRODUCT, dispatcher=dispatcher)
    assert out["reason"] == "unknown_shop"


def test_app_uninstalled_drops_token(db, installation):
    out = webhook_service.handle_webhook(db, "app/uninstalled", installation.shop_domain.upper(), {})

    assert out["action"] == "uninstalled"
    assert installation_repo.get(db, installation.id).access_token is None
    assert webhook_service.handle_webhook(db, "app/uninstalled", "ghost.myshopify.com", {})["action"] == "unknown_shop"
