"""只读预览：不建 job、不写目标"""
from decimal import Decimal

import pytest

from syncbridge.integrations.connector import CatalogItem
from syncbridge.integrations.errors import Unauthorized, UpstreamServerError
from syncbridge.orchestration.connection_sync.planner import preview_connection
from syncbridge.repository import installation_repo, sync_job_repo
from syncbridge.services.errors import NeedsReinstall, UpstreamUnavailable, ValidationError


def _item(sku, price="10.00", stock=5):
    return CatalogItem(sku=sku, title=f"Item {sku}", price=Decimal(price), stock=stock)


def _preview(db, installation, connection, source, dest, limit=None):
    return preview_connection(
        db, installation, connection.id, limit,
        source_factory=lambda _inst: source, dest_factory=lambda _conn: dest,
    )


def test_preview_counts_without_writing(db, installation, connection, fake_store):
    source = fake_store([_item("A"), _item("B", price="12.00"), _item("C")])
    dest = fake_store([_item("B", price="11.00"), _item("C")])

    out = _preview(db, installation, connection, source, dest)

    assert out["connection_id"] == connection.id
    assert (out["total_items"], out["items_to_create"], out["items_to_update"], out["items_to_skip"]) == (3, 1, 1, 1)
    assert out["items_to_sync"] == 2
    rows = {r["sku"]: r for r in out["preview_items"]}
    assert rows["A"]["action"] == "create"
    assert rows["B"]["changes"] == {"price": {"old": "11.00", "new": "12.00"}}
    assert dest.created == [] and dest.updated == []
    assert sync_job_repo.get_active(db, connection.id) is None
    assert source.closed and dest.closed


def test_preview_limit_only_trims_rows(db, installation, connection, fake_store):
    source = fake_store([_item(s) for s in "ABCDE"])
    out = _preview(db, installation, connection, source, fake_store(), limit=2)

    assert out["items_to_create"] == 5
    assert len(out["preview_items"]) == 2


@pytest.mark.parametrize("limit", [0, 1001])
def test_preview_limit_bounds(db, installation, connection, fake_store, limit):
    with pytest.raises(ValidationError):
        _preview(db, installation, connection, fake_store(), fake_store(), limit=limit)


def test_preview_needs_source_token(db, installation, connection, fake_store):
    installation_repo.clear_token(db, installation.id)
    with pytest.raises(NeedsReinstall):
        _preview(db, installation, connection, fake_store(), fake_store())


def test_preview_maps_connector_failures(db, installation, connection, fake_store):
    with pytest.raises(NeedsReinstall):
        _preview(db, installation, connection, fake_store(list_error=Unauthorized("revoked")), fake_store())
    with pytest.raises(ValidationError):
        _preview(db, installation, connection, fake_store(), fake_store(list_error=Unauthorized("revoked")))
    with pytest.raises(UpstreamUnavailable):
        _preview(db, installation, connection, fake_store(list_error=UpstreamServerError("503")), fake_store())
