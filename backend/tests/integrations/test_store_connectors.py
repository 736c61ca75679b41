"""
WooCommerceStore / ShopifyStore 对假 Session 的行为检查
  - 不打真实网络；FakeSession 按顺序回放响应
"""
from decimal import Decimal

import pytest

from syncbridge.core.config import settings
from syncbridge.integrations import factory
from syncbridge.integrations.connector import CatalogItem, ItemRef
from syncbridge.integrations.errors import Conflict, NotFound, PayloadError, RateLimited, Unauthorized
from syncbridge.integrations.shopify.shopify_store import ShopifyStore, to_location_gid
from syncbridge.integrations.woocommerce.woo_store import WooCommerceStore, normalize_base_url


VARIANT_GID = "gid://shopify/ProductVariant/2"
PRODUCT_GID = "gid://shopify/Product/1"
INVENTORY_GID = "gid://shopify/InventoryItem/3"


def _no_sleep(_seconds):
    return None


# ---------- WooCommerce ----------
@pytest.fixture
def woo(http):
    def _make(*responses):
        session = http.session(*responses)
        store = WooCommerceStore(
            "https://shop.example.com/wp-json/", "ck_key", "cs_secret",
            page_size=2, session=session, sleep=_no_sleep,
        )
        return store, session
    return _make


def test_normalize_base_url():
    assert normalize_base_url(" https://shop.example.com/wp-json/ ") == "https://shop.example.com"
    assert normalize_base_url("https://shop.example.com/store/") == "https://shop.example.com/store"


def test_woo_list_expands_variations_and_pages(http, woo):
    store, session = woo(
        http.response(200, [
            {"id": 5, "type": "simple", "sku": " MUG-1 ", "name": "Mug", "regular_price": "9.5",
             "stock_quantity": 4, "categories": [{"name": "Kitchen"}], "tags": [{"name": "gift"}]},
            {"id": 7, "type": "variable", "name": "Shirt", "variations": [11, 12],
             "categories": [{"name": "Apparel"}]},
        ]),
        http.response(200, [
            {"id": 11, "sku": "SHIRT-M", "regular_price": "20", "stock_status": "instock",
             "attributes": [{"option": "M"}]},
        ]),
    )

    page = store.list_items()

    assert page.next_cursor == "2"
    mug, shirt = page.items
    assert (mug.sku, mug.price, mug.stock, mug.categories, mug.tags) == ("MUG-1", Decimal("9.50"), 4, ("Kitchen",), ("gift",))
    assert (shirt.sku, shirt.title, shirt.stock) == ("SHIRT-M", "Shirt - M", 1)
    assert shirt.ref == ItemRef(product_id="7", variant_id="11")

    first, second = session.calls
    assert first.url == "https://shop.example.com/wp-json/wc/v3/products"
    assert first.params["consumer_key"] == "ck_key"
    assert first.params["consumer_secret"] == "cs_secret"
    assert first.params["page"] == 1
    assert second.url.endswith("/products/7/variations")


def test_woo_short_page_is_last(http, woo):
    store, _ = woo(http.response(200, [{"id": 5, "sku": "A", "name": "A"}]))
    page = store.list_items("3")
    assert page.next_cursor is None
    assert [i.sku for i in page.items] == ["A"]


def test_woo_create_duplicate_sku_becomes_update(http, woo):
    store, session = woo(
        http.response(400, {"code": "product_invalid_sku", "message": "Invalid or duplicated SKU."}),
        http.response(200, [{"id": 55, "sku": "MUG-1", "parent_id": 0}]),
        http.response(200, {"id": 55}),
    )

    ref = store.create_item(CatalogItem(sku="MUG-1", title="Mug", price=Decimal("10")))

    assert ref == ItemRef(product_id="55")
    post, lookup, put = session.calls
    assert (post.method, lookup.params["sku"]) == ("POST", "MUG-1")
    assert put.method == "PUT"
    assert put.url.endswith("/products/55")
    # 默认只覆盖价格：分类 / 标签保持目标端原样
    assert put.json == {"regular_price": "10.00"}


def test_woo_create_sends_draft_with_stock(http, woo):
    store, session = woo(http.response(201, {"id": 90}))

    ref = store.create_item(CatalogItem(sku="NEW-1", title="New", stock=0), publish=False)

    assert ref.product_id == "90"
    body = session.calls[0].json
    assert body["status"] == "draft"
    assert (body["manage_stock"], body["stock_quantity"], body["stock_status"]) == (True, 0, "outofstock")


def test_woo_update_variation_path(http, woo):
    store, session = woo(
        http.response(200, [{"id": 12, "sku": "SHIRT-L", "parent_id": 7}]),
        http.response(200, {"id": 12}),
    )

    store.update_item("SHIRT-L", {"price": {"old": "20.00", "new": "22.5"}, "tags": {"old": [], "new": ["x"]}})

    put = session.calls[-1]
    assert put.url.endswith("/products/7/variations/12")
    # 变体不写标签
    assert put.json == {"regular_price": "22.50"}


def test_woo_update_without_changes_sends_nothing(http, woo):
    store, session = woo()
    store.update_item("MUG-1", {"price": {"old": "1", "new": None}}, ref=ItemRef(product_id="55"))
    assert session.calls == []


def test_woo_update_unknown_sku(http, woo):
    store, _ = woo(http.response(200, []))
    with pytest.raises(NotFound):
        store.update_item("GHOST", {"stock": {"old": 1, "new": 2}})


def test_woo_rejected_credentials(http, woo):
    store, session = woo(http.response(401, {"code": "woocommerce_rest_cannot_view"}))
    with pytest.raises(Unauthorized):
        store.list_items()
    assert len(session.calls) == 1


# ---------- Shopify ----------
@pytest.fixture
def shopify(http):
    def _make(*responses, list_retries=0, sleeps=None, location_id=None):
        session = http.session(*responses)
        store = ShopifyStore(
            "dest.myshopify.com", "shpat_dest",
            page_size=2, list_retries=list_retries, location_id=location_id,
            session=session, sleep=(sleeps.append if sleeps is not None else _no_sleep),
        )
        return store, session
    return _make


def _gql(data):
    return {"data": data}


THROTTLED = {
    "errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}],
    "extensions": {"cost": {"requestedQueryCost": 10, "throttleStatus": {"currentlyAvailable": 2, "restoreRate": 5}}},
}

VARIANT_HIT = _gql({"productVariants": {"nodes": [{
    "id": VARIANT_GID, "sku": "SKU-1",
    "product": {"id": PRODUCT_GID}, "inventoryItem": {"id": INVENTORY_GID},
}]}})

NO_VARIANT = _gql({"productVariants": {"nodes": []}})


def test_to_location_gid():
    assert to_location_gid("123") == "gid://shopify/Location/123"
    assert to_location_gid("gid://shopify/Location/9") == "gid://shopify/Location/9"
    assert to_location_gid(" ") is None


def test_shopify_list_items(http, shopify):
    store, session = shopify(http.response(200, _gql({"products": {
        "edges": [
            {"node": {
                "id": PRODUCT_GID, "title": "Mug", "productType": "Kitchen", "tags": ["gift", "Gift"],
                "vendor": "Acme", "collections": {"nodes": [{"title": "Sale"}]},
                "variants": {"nodes": [{"id": VARIANT_GID, "sku": "MUG-1", "title": "Default Title",
                                        "price": "9.50", "inventoryQuantity": 3,
                                        "inventoryItem": {"id": INVENTORY_GID}}]},
            }},
            {"node": {
                "id": "gid://shopify/Product/4", "title": "Shirt", "tags": [],
                "variants": {"nodes": [{"id": "gid://shopify/ProductVariant/5", "sku": "SHIRT-L",
                                        "title": "Large", "price": "20.00", "inventoryQuantity": 0}]},
            }},
        ],
        "pageInfo": {"hasNextPage": True, "endCursor": "cursor-2"},
    }})))

    page = store.list_items()

    assert page.next_cursor == "cursor-2"
    mug, shirt = page.items
    assert (mug.title, mug.price, mug.stock, mug.categories, mug.tags, mug.collections) == (
        "Mug", Decimal("9.50"), 3, ("Kitchen",), ("gift",), ("Sale",),
    )
    assert mug.ref.inventory_item_id == INVENTORY_GID
    assert shirt.title == "Shirt - Large"
    assert shirt.categories == ()

    [call] = session.calls
    assert call.url == "https://dest.myshopify.com/admin/api/2025-07/graphql.json"
    assert call.headers["X-Shopify-Access-Token"] == "shpat_dest"
    assert call.json["variables"] == {"first": 2, "after": None}


def test_shopify_list_reads_location_level(http, shopify):
    store, session = shopify(http.response(200, _gql({"products": {
        "edges": [{"node": {"id": PRODUCT_GID, "title": "Mug", "variants": {"nodes": [{
            "sku": "MUG-1", "title": "Default Title", "inventoryQuantity": 99,
            "inventoryItem": {"id": INVENTORY_GID, "inventoryLevel": {"quantities": [{"name": "available", "quantity": 6}]}},
        }]}}}],
        "pageInfo": {"hasNextPage": False, "endCursor": None},
    }})), location_id="77")

    page = store.list_items()

    assert page.next_cursor is None
    assert page.items[0].stock == 6
    assert session.calls[0].json["variables"]["locationId"] == "gid://shopify/Location/77"


def test_shopify_throttle_raises_rate_limited(http, shopify):
    store, _ = shopify(http.response(200, THROTTLED))
    with pytest.raises(RateLimited) as exc:
        store.list_items()
    assert exc.value.retry_after == 1.6


def test_shopify_throttle_retried_on_reads(http, shopify):
    sleeps = []
    store, session = shopify(
        http.response(200, THROTTLED),
        http.response(200, _gql({"products": {"edges": [], "pageInfo": {"hasNextPage": False}}})),
        list_retries=2, sleeps=sleeps,
    )

    assert store.list_items().items == []
    assert sleeps == [1.6]
    assert len(session.calls) == 2


def test_shopify_long_throttle_goes_back_to_caller(http, shopify, monkeypatch):
    monkeypatch.setattr(settings, "SYNC_LIST_RETRY_MAX_SLEEP_SEC", 1.0)
    sleeps = []
    store, session = shopify(http.response(200, THROTTLED), list_retries=2, sleeps=sleeps)

    with pytest.raises(RateLimited):
        store.list_items()
    assert sleeps == []
    assert len(session.calls) == 1


def test_shopify_access_denied(http, shopify):
    store, _ = shopify(http.response(200, {"errors": [{"message": "denied", "extensions": {"code": "ACCESS_DENIED"}}]}))
    with pytest.raises(Unauthorized):
        store.list_items()


def test_shopify_other_graphql_errors(http, shopify):
    store, _ = shopify(http.response(200, {"errors": [{"message": "Field 'x' doesn't exist"}]}))
    with pytest.raises(PayloadError):
        store.list_items()


def test_shopify_price_update_uses_bulk_variants(http, shopify):
    store, session = shopify(
        http.response(200, VARIANT_HIT),
        http.response(200, _gql({"productVariantsBulkUpdate": {"userErrors": []}})),
    )

    store.update_item("SKU-1", {"price": {"old": "10.00", "new": "12"}})

    lookup, bulk = session.calls
    assert lookup.json["variables"] == {"query": 'sku:"SKU-1"'}
    assert bulk.json["variables"] == {"productId": PRODUCT_GID, "variants": [{"id": VARIANT_GID, "price": "12.00"}]}


def test_shopify_tags_update_uses_product_update(http, shopify):
    store, session = shopify(http.response(200, _gql({"productUpdate": {"userErrors": []}})))

    ref = ItemRef(product_id=PRODUCT_GID, variant_id=VARIANT_GID, inventory_item_id=INVENTORY_GID)
    store.update_item("SKU-1", {"tags": {"old": ["a"], "new": ["a", "b"]}}, ref=ref)

    [call] = session.calls
    assert call.json["variables"] == {"product": {"id": PRODUCT_GID, "tags": ["a", "b"]}}


def test_shopify_update_unknown_sku(http, shopify):
    store, _ = shopify(http.response(200, NO_VARIANT))
    with pytest.raises(NotFound):
        store.update_item("GHOST", {"price": {"old": None, "new": "1"}})


def test_shopify_create_conflict(http, shopify):
    store, _ = shopify(
        http.response(200, NO_VARIANT),
        http.response(200, _gql({"productCreate": {
            "product": None, "userErrors": [{"field": ["handle"], "message": "Handle has already been taken"}],
        }})),
    )
    with pytest.raises(Conflict):
        store.create_item(CatalogItem(sku="SKU-9", title="Mug"))


def test_shopify_create_existing_sku_updates_instead(http, shopify):
    store, session = shopify(
        http.response(200, VARIANT_HIT),
        http.response(200, _gql({"productVariantsBulkUpdate": {"userErrors": []}})),
    )

    ref = store.create_item(CatalogItem(sku="SKU-1", title="Mug", price=Decimal("5"), tags=("old-tag",)))

    assert ref.variant_id == VARIANT_GID
    # 标签 / 类型规则没开：只写价格，不发 productUpdate
    assert len(session.calls) == 2
    assert "productCreate" not in str(session.calls[1].json["query"])


def test_shopify_create_existing_sku_writes_enabled_fields_only(http, shopify):
    store, session = shopify(
        http.response(200, VARIANT_HIT),
        http.response(200, _gql({"productUpdate": {"userErrors": []}})),
    )

    store.create_item(CatalogItem(sku="SKU-1", title="Mug", price=Decimal("5"), tags=("a",)), sync_fields=("tags",))

    _, update = session.calls
    assert update.json["variables"] == {"product": {"id": PRODUCT_GID, "tags": ["a"]}}


def test_shopify_inventory_activates_when_not_stocked(http, shopify):
    store, session = shopify(
        http.response(200, _gql({"inventorySetQuantities": {"userErrors": [
            {"code": "ITEM_NOT_STOCKED_AT_LOCATION", "message": "not stocked"},
        ]}})),
        http.response(200, _gql({"inventoryActivate": {"userErrors": []}})),
    )

    store.set_inventory_level("123", "SKU-1", 4, inventory_item_id=INVENTORY_GID)

    _, activate = session.calls
    assert activate.json["variables"] == {
        "inventoryItemId": INVENTORY_GID, "locationId": "gid://shopify/Location/123", "available": 4,
    }


def test_shopify_ensure_webhooks(http, shopify):
    callback = "https://hooks.syncbridge.test/api/v1/webhooks/shopify"
    store, session = shopify(
        http.response(200, _gql({"webhookSubscriptions": {"edges": [{"node": {
            "id": "gid://shopify/WebhookSubscription/1",
            "endpoint": {"__typename": "WebhookHttpEndpoint", "callbackUrl": callback},
        }}]}})),
        http.response(200, _gql({"webhookSubscriptions": {"edges": []}})),
        http.response(200, _gql({"webhookSubscriptionCreate": {
            "webhookSubscription": {"id": "gid://shopify/WebhookSubscription/2"}, "userErrors": [],
        }})),
    )

    results = store.ensure_webhooks(callback, ["PRODUCTS_UPDATE", "APP_UNINSTALLED"])

    assert [(r["topic"], r["action"]) for r in results] == [("PRODUCTS_UPDATE", "noop"), ("APP_UNINSTALLED", "created")]
    assert session.calls[2].json["variables"] == {"topic": "APP_UNINSTALLED", "cb": callback}


# ---------- factory ----------
def test_factory_decrypts_credentials(installation, make_connection):
    source = factory.build_source_connector(installation)
    assert isinstance(source, ShopifyStore)
    assert source._http._headers["X-Shopify-Access-Token"] == "shpat_source_token"

    shop_conn = make_connection(installation, dest_location_id="42")
    dest = factory.build_destination_connector(shop_conn)
    assert dest._http._headers["X-Shopify-Access-Token"] == "shpat_dest_token"
    assert dest.location_id == "gid://shopify/Location/42"

    woo_conn = make_connection(
        installation, name="Woo", platform="woocommerce", dest_shop_domain=None, dest_access_token=None,
        base_url="https://woo.example.com", consumer_key="ck_abc", consumer_secret="cs_xyz",
    )
    woo_store = factory.build_destination_connector(woo_conn)
    assert isinstance(woo_store, WooCommerceStore)
    assert woo_store._http._params == {"consumer_key": "ck_abc", "consumer_secret": "cs_xyz"}


def test_factory_missing_credentials(make_installation, connection):
    with pytest.raises(Unauthorized):
        factory.build_source_connector(make_installation("empty.myshopify.com", token=None))

    connection.dest_access_token = None
    with pytest.raises(Unauthorized):
        factory.build_destination_connector(connection)
