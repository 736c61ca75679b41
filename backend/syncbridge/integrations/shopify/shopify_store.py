
"""面向 Admin GraphQL 的店铺连接器（平台 A）：既做源店铺的读取，也做 Shopify 目标店铺的写入"""
from __future__ import annotations

import logging, time
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from syncbridge.core.config import settings
from syncbridge.db.model.connection import PLATFORM_SHOPIFY
from syncbridge.integrations.connector import (
    CAP_COLLECTIONS, CAP_INVENTORY_LEVELS, DEFAULT_SYNC_FIELDS, CatalogItem, ItemPage, ItemRef,
    clean_terms, existing_item_deltas, format_price, to_decimal, to_int,
)
from syncbridge.integrations.errors import (
    Conflict, NotFound, PayloadError, RateLimited, Unauthorized,
)
from syncbridge.integrations.http_client import StoreHttpClient
from syncbridge.integrations.shopify.graphql_queries import (
    _LIST_WEBHOOKS,
    _CREATE_WEBHOOK,
    COLLECTION_BY_TITLE,
    COLLECTION_CREATE,
    INVENTORY_ACTIVATE,
    INVENTORY_SET_QUANTITIES,
    PRIMARY_LOCATION,
    PRODUCT_CREATE,
    PRODUCT_UPDATE,
    VARIANT_BY_SKU,
    VARIANTS_BULK_UPDATE,
    escape_for_query,
    products_page_query,
)


logger = logging.getLogger(__name__)

DEFAULT_VARIANT_TITLE = "Default Title"


# ---------------- 基础：location GID ----------------
def to_location_gid(value: Optional[str]) -> Optional[str]:
    if value is None or str(value).strip() == "":
        return None
    value = str(value).strip()
    if value.startswith("gid://"):
        return value
    return f"gid://shopify/Location/{value}"


class ShopifyStore:

    platform = PLATFORM_SHOPIFY
    capabilities = frozenset({CAP_COLLECTIONS, CAP_INVENTORY_LEVELS})

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: Optional[str] = None,
        location_id: Optional[str] = None,
        page_size: Optional[int] = None,
        list_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.shop_domain = shop_domain
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.location_id = to_location_gid(location_id)
        self.page_size = page_size or settings.SHOPIFY_PAGE_SIZE
        self.list_retries = list_retries
        self._sleep = sleep
        self._http = StoreHttpClient(
            f"https://{shop_domain}/admin/api/{self.api_version}/",
            vendor="shopify",
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token,
                "User-Agent": "SyncBridgeHub/ShopifyStore (+python)",
            },
            timeout=settings.SHOPIFY_HTTP_TIMEOUT,
            backoff_max=settings.SYNC_LIST_RETRY_MAX_SLEEP_SEC,
            session=session,
            sleep=sleep,
        )
        self._collection_ids: Dict[str, str] = {}
        self._primary_location: Optional[str] = None


    '''
    通用 GraphQL POST（带日志 + 分类异常）
        - HTTP 层错误由 StoreHttpClient 分类（429/401/5xx/网络）
        - 顶层 errors 中 THROTTLED → RateLimited（按 cost/restoreRate 估算等待），ACCESS_DENIED → Unauthorized
        - 其他顶层 errors 视为 PayloadError（语法/字段问题，不重试）
        - retries>0 仅用于读（分页），写操作交给执行器的 item 级重试
    '''
    def _post_graphql(
        self,
        query: str,
        variables: Optional[dict] = None,
        *,
        op_name: str = "",
        retries: int = 0,
    ) -> dict:
        payload = {"query": query, "variables": variables or {}}
        safe_vars_keys = list(payload["variables"].keys())

        attempt = 0
        while True:
            start = time.perf_counter()
            resp = self._http.request("POST", "graphql.json", json=payload, retries=retries)
            latency_ms = int((time.perf_counter() - start) * 1000)
            data = self._http.as_json(resp)

            errors = data.get("errors") if isinstance(data, dict) else None
            if errors:
                codes = _error_codes(errors)
                if "THROTTLED" in codes:
                    wait = _throttle_wait_seconds(data)
                    logger.warning("shopify.graphql.throttled op=%s latency_ms=%s attempt=%s/%s wait=%s",
                                   op_name, latency_ms, attempt, retries, wait)
                    if attempt < retries and (wait or 1.0) <= settings.SYNC_LIST_RETRY_MAX_SLEEP_SEC:
                        attempt += 1
                        self._sleep(wait or 1.0)
                        continue
                    raise RateLimited(f"shopify throttled op={op_name}", retry_after=wait)
                if "ACCESS_DENIED" in codes:
                    raise Unauthorized(f"shopify access denied op={op_name}: {errors}")
                logger.error("shopify.graphql.gql_errors op=%s latency_ms=%s errors=%s", op_name, latency_ms, errors)
                raise PayloadError(f"GraphQL top-level errors op={op_name}: {errors}")

            logger.info("shopify.graphql.ok op=%s latency_ms=%s attempt=%s vars=%s",
                        op_name, latency_ms, attempt, safe_vars_keys)
            return (data or {}).get("data") or {}


    # ---------- 读取 ----------
    def list_items(self, cursor: Optional[str] = None) -> ItemPage:
        variables: Dict[str, Any] = {"first": self.page_size, "after": cursor}
        if self.location_id:
            variables["locationId"] = self.location_id

        data = self._post_graphql(
            products_page_query(bool(self.location_id)),
            variables,
            op_name="products.page",
            retries=self.list_retries,
        )
        products = data.get("products") or {}

        items: List[CatalogItem] = []
        for edge in products.get("edges") or []:
            items.extend(_items_from_product(edge.get("node") or {}))

        page_info = products.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return ItemPage(items=items, next_cursor=next_cursor)


    # ---------- 写入 ----------
    """
        按 SKU 幂等创建：
          - 店里已有同 SKU 变体 → 转为整条更新，返回已有 ref
          - 否则 productCreate → 默认变体写 SKU/价格 → 在 location 上激活库存
    """
    def create_item(
        self,
        item: CatalogItem,
        *,
        publish: bool = False,
        location_id: Optional[str] = None,
        sync_fields: Iterable[str] = DEFAULT_SYNC_FIELDS,
    ) -> ItemRef:
        existing = self._find_variant(item.sku)
        if existing is not None:
            logger.info("shopify.create.exists_update shop=%s sku=%s", self.shop_domain, item.sku)
            self.update_item(item.sku, existing_item_deltas(item, sync_fields), ref=existing, location_id=location_id)
            return existing

        product_input: Dict[str, Any] = {
            "title": item.title or item.sku,
            "status": "ACTIVE" if publish else "DRAFT",
            "tags": list(item.tags),
        }
        if item.categories:
            product_input["productType"] = item.categories[0]
        if item.vendor:
            product_input["vendor"] = item.vendor
        if item.description:
            product_input["descriptionHtml"] = item.description
        if item.collections:
            product_input["collectionsToJoin"] = self._collection_ids_for(item.collections, create=True)

        data = self._post_graphql(PRODUCT_CREATE, {"product": product_input}, op_name="productCreate")
        payload = data.get("productCreate") or {}
        _raise_user_errors("productCreate", payload.get("userErrors"))

        product = payload.get("product") or {}
        variants = ((product.get("variants") or {}).get("nodes")) or []
        if not product.get("id") or not variants:
            raise PayloadError(f"productCreate returned no product/variant for sku={item.sku}")
        variant = variants[0]
        ref = ItemRef(
            product_id=product["id"],
            variant_id=variant.get("id"),
            inventory_item_id=(variant.get("inventoryItem") or {}).get("id"),
        )

        variant_input: Dict[str, Any] = {"id": ref.variant_id, "inventoryItem": {"sku": item.sku, "tracked": True}}
        if item.price is not None:
            variant_input["price"] = format_price(item.price)
        self._bulk_update_variants(ref.product_id, [variant_input])

        if item.stock is not None and ref.inventory_item_id:
            loc = self._resolve_location(location_id)
            data = self._post_graphql(
                INVENTORY_ACTIVATE,
                {"inventoryItemId": ref.inventory_item_id, "locationId": loc, "available": int(item.stock)},
                op_name="inventoryActivate",
            )
            _raise_user_errors("inventoryActivate", (data.get("inventoryActivate") or {}).get("userErrors"))

        logger.info("shopify.create.ok shop=%s sku=%s product=%s", self.shop_domain, item.sku, ref.product_id)
        return ref


    """
        deltas: {"price": {"old":..,"new":..}, "stock": {...}, "categories"/"tags"/"collections": {...}}
        找不到 SKU → NotFound（执行器可据此改为创建）
    """
    def update_item(
        self,
        sku: str,
        deltas: Dict[str, Dict[str, Any]],
        *,
        ref: Optional[ItemRef] = None,
        location_id: Optional[str] = None,
    ) -> None:
        if ref is None or not ref.variant_id or not ref.product_id:
            ref = self._find_variant(sku)
        if ref is None:
            raise NotFound(f"sku {sku} not found on {self.shop_domain}")

        if "price" in deltas:
            new_price = to_decimal(deltas["price"].get("new"))
            if new_price is not None:
                self._bulk_update_variants(ref.product_id, [{"id": ref.variant_id, "price": format_price(new_price)}])

        product_input: Dict[str, Any] = {"id": ref.product_id}
        if "categories" in deltas:
            new_categories = list(deltas["categories"].get("new") or [])
            product_input["productType"] = new_categories[0] if new_categories else ""
        if "tags" in deltas:
            product_input["tags"] = list(deltas["tags"].get("new") or [])
        if "collections" in deltas:
            old = {c.lower() for c in deltas["collections"].get("old") or []}
            new = list(deltas["collections"].get("new") or [])
            new_lower = {c.lower() for c in new}
            join = [c for c in new if c.lower() not in old]
            leave = [c for c in deltas["collections"].get("old") or [] if c.lower() not in new_lower]
            if join:
                product_input["collectionsToJoin"] = self._collection_ids_for(join, create=True)
            if leave:
                leave_ids = self._collection_ids_for(leave, create=False)
                if leave_ids:
                    product_input["collectionsToLeave"] = leave_ids

        if len(product_input) > 1:
            data = self._post_graphql(PRODUCT_UPDATE, {"product": product_input}, op_name="productUpdate")
            _raise_user_errors("productUpdate", (data.get("productUpdate") or {}).get("userErrors"))

        if "stock" in deltas:
            quantity = to_int(deltas["stock"].get("new"))
            if quantity is not None:
                self.set_inventory_level(location_id, sku, quantity, inventory_item_id=ref.inventory_item_id)


    def set_inventory_level(
        self,
        location_id: Optional[str],
        sku: str,
        quantity: int,
        *,
        inventory_item_id: Optional[str] = None,
    ) -> None:
        loc = self._resolve_location(location_id)
        if not inventory_item_id:
            ref = self._find_variant(sku)
            if ref is None or not ref.inventory_item_id:
                raise NotFound(f"inventory item for sku {sku} not found on {self.shop_domain}")
            inventory_item_id = ref.inventory_item_id

        data = self._post_graphql(
            INVENTORY_SET_QUANTITIES,
            {"input": {
                "name": "available",
                "reason": "correction",
                "ignoreCompareQuantity": True,
                "quantities": [{"inventoryItemId": inventory_item_id, "locationId": loc, "quantity": int(quantity)}],
            }},
            op_name="inventorySetQuantities",
        )
        user_errors = (data.get("inventorySetQuantities") or {}).get("userErrors") or []
        # 该 location 还没启用这个库存项：改用 inventoryActivate 一步激活 + 写数量
        if any(str(e.get("code") or "").upper() == "ITEM_NOT_STOCKED_AT_LOCATION" for e in user_errors):
            data = self._post_graphql(
                INVENTORY_ACTIVATE,
                {"inventoryItemId": inventory_item_id, "locationId": loc, "available": int(quantity)},
                op_name="inventoryActivate",
            )
            _raise_user_errors("inventoryActivate", (data.get("inventoryActivate") or {}).get("userErrors"))
            return
        _raise_user_errors("inventorySetQuantities", user_errors)


    # ⚠️ ---------- 新店铺初始化：Webhook 订阅，确保存在/对齐回调地址 ----------
    """
    幂等创建工具：
       - 每个 topic 若已存在同 callback → {"action":"noop"}
       - 否则创建 → {"action":"created"}
    """
    def ensure_webhooks(self, callback_url: str, topics: Iterable[str]) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for topic in topics:
            q = self._post_graphql(_LIST_WEBHOOKS, {"first": 50, "topic": topic}, op_name="webhook.list", retries=self.list_retries)
            edges = (q.get("webhookSubscriptions") or {}).get("edges", [])
            existing = []
            for e in edges:
                node = e.get("node") or {}
                ep = node.get("endpoint") or {}
                cb = ep.get("callbackUrl") if ep.get("__typename") == "WebhookHttpEndpoint" else None
                existing.append({"id": node.get("id"), "callbackUrl": cb})

            hit = next((it for it in existing if it.get("callbackUrl") == callback_url), None)
            if hit:
                results.append({"action": "noop", "id": hit["id"], "topic": topic, "callbackUrl": callback_url})
                continue

            c = self._post_graphql(_CREATE_WEBHOOK, {"topic": topic, "cb": callback_url}, op_name="webhook.create")
            payload = c.get("webhookSubscriptionCreate") or {}
            ue = payload.get("userErrors") or []
            if ue:
                raise PayloadError(f"webhook create userErrors topic={topic}: {ue}")
            node = payload.get("webhookSubscription") or {}
            results.append({"action": "created", "id": node.get("id"), "topic": topic, "callbackUrl": callback_url})
        return results


    def close(self) -> None:
        self._http.close()


    # ---------- Helpers ----------
    def _find_variant(self, sku: str) -> Optional[ItemRef]:
        data = self._post_graphql(
            VARIANT_BY_SKU, {"query": f"sku:{escape_for_query(sku)}"}, op_name="variant.bySku", retries=self.list_retries
        )
        for node in ((data.get("productVariants") or {}).get("nodes")) or []:
            if (node.get("sku") or "").strip() == sku:
                return ItemRef(
                    product_id=(node.get("product") or {}).get("id"),
                    variant_id=node.get("id"),
                    inventory_item_id=(node.get("inventoryItem") or {}).get("id"),
                )
        return None

    def _bulk_update_variants(self, product_id: Optional[str], variants: List[Dict[str, Any]]) -> None:
        data = self._post_graphql(
            VARIANTS_BULK_UPDATE, {"productId": product_id, "variants": variants}, op_name="productVariantsBulkUpdate"
        )
        _raise_user_errors("productVariantsBulkUpdate", (data.get("productVariantsBulkUpdate") or {}).get("userErrors"))

    def _collection_ids_for(self, titles: Iterable[str], *, create: bool) -> List[str]:
        ids: List[str] = []
        for title in titles:
            key = title.strip().lower()
            if not key:
                continue
            if key not in self._collection_ids:
                data = self._post_graphql(
                    COLLECTION_BY_TITLE, {"query": f"title:{escape_for_query(title)}"},
                    op_name="collection.byTitle", retries=self.list_retries,
                )
                nodes = ((data.get("collections") or {}).get("nodes")) or []
                match = next((n for n in nodes if (n.get("title") or "").strip().lower() == key), None)
                if match:
                    self._collection_ids[key] = match["id"]
                elif create:
                    created = self._post_graphql(COLLECTION_CREATE, {"input": {"title": title.strip()}}, op_name="collectionCreate")
                    payload = created.get("collectionCreate") or {}
                    _raise_user_errors("collectionCreate", payload.get("userErrors"))
                    self._collection_ids[key] = (payload.get("collection") or {})["id"]
                else:
                    continue
            ids.append(self._collection_ids[key])
        return ids

    def _resolve_location(self, location_id: Optional[str]) -> str:
        loc = to_location_gid(location_id) or self.location_id
        if loc:
            return loc
        if self._primary_location is None:
            data = self._post_graphql(PRIMARY_LOCATION, op_name="locations.primary", retries=self.list_retries)
            nodes = ((data.get("locations") or {}).get("nodes")) or []
            if not nodes:
                raise PayloadError(f"no inventory location available on {self.shop_domain}")
            self._primary_location = nodes[0]["id"]
        return self._primary_location



# ---------- 解析 ----------
def _items_from_product(node: Dict[str, Any]) -> List[CatalogItem]:
    product_title = (node.get("title") or "").strip()
    product_type = (node.get("productType") or "").strip()
    tags = clean_terms(node.get("tags") or [])
    collections = clean_terms(c.get("title") for c in ((node.get("collections") or {}).get("nodes") or []))

    items: List[CatalogItem] = []
    for variant in ((node.get("variants") or {}).get("nodes")) or []:
        sku = (variant.get("sku") or "").strip()
        variant_title = (variant.get("title") or "").strip()
        title = product_title
        if variant_title and variant_title != DEFAULT_VARIANT_TITLE:
            title = f"{product_title} - {variant_title}"

        inventory_item = variant.get("inventoryItem") or {}
        stock = to_int(variant.get("inventoryQuantity"))
        level = inventory_item.get("inventoryLevel")
        if level is not None:
            quantities = level.get("quantities") or []
            available = next((q.get("quantity") for q in quantities if q.get("name") == "available"), None)
            stock = to_int(available) if available is not None else 0

        items.append(CatalogItem(
            sku=sku,
            title=title,
            price=to_decimal(variant.get("price")),
            stock=stock,
            categories=(product_type,) if product_type else (),
            tags=tags,
            collections=collections,
            vendor=node.get("vendor"),
            ref=ItemRef(
                product_id=node.get("id"),
                variant_id=variant.get("id"),
                inventory_item_id=inventory_item.get("id"),
            ),
        ))
    return items


def _error_codes(errors: Any) -> set:
    codes = set()
    if isinstance(errors, list):
        for e in errors:
            if isinstance(e, dict):
                code = (e.get("extensions") or {}).get("code")
                if code:
                    codes.add(str(code).upper())
    return codes


# 按 cost / restoreRate 估算需要等待的秒数
def _throttle_wait_seconds(data: Dict[str, Any]) -> Optional[float]:
    cost = (data.get("extensions") or {}).get("cost") or {}
    throttle = cost.get("throttleStatus") or {}
    try:
        requested = float(cost.get("requestedQueryCost") or 0)
        available = float(throttle.get("currentlyAvailable") or 0)
        restore = float(throttle.get("restoreRate") or 0)
    except (TypeError, ValueError):
        return None
    if restore <= 0:
        return None
    return round(max(0.0, requested - available) / restore, 2) or 1.0


def _raise_user_errors(op: str, user_errors: Optional[List[Dict[str, Any]]]) -> None:
    if not user_errors:
        return
    msgs = "; ".join(str(e.get("message") or "") for e in user_errors)
    low = msgs.lower()
    if "already" in low and ("taken" in low or "exist" in low):
        raise Conflict(f"{op} userErrors: {msgs}")
    if "does not exist" in low or "not found" in low:
        raise NotFound(f"{op} userErrors: {msgs}")
    raise PayloadError(f"{op} userErrors: {msgs}")
