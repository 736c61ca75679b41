"""
WooCommerce 店铺连接器（平台 B）：REST /wp-json/wc/v3/products
  - consumer_key / consumer_secret 走 query 参数
  - 游标 = 页码字符串（"1","2",...），一页不满即最后一页
  - 有变体的商品按变体 SKU 展开成多行
"""
from __future__ import annotations

import json, logging, time
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from syncbridge.core.config import settings
from syncbridge.db.model.connection import PLATFORM_WOOCOMMERCE
from syncbridge.integrations.connector import (
    DEFAULT_SYNC_FIELDS, CatalogItem, ItemPage, ItemRef,
    clean_terms, existing_item_deltas, format_price, to_decimal, to_int,
)
from syncbridge.integrations.errors import Conflict, ConnectorError, NotFound, PayloadError
from syncbridge.integrations.http_client import StoreHttpClient


logger = logging.getLogger(__name__)

_DUPLICATE_SKU_MARKERS = ("product_invalid_sku", "already", "duplicate")


def normalize_base_url(url: str) -> str:
    """去掉结尾的 / 和 /wp-json（可能被用户一起贴进来）。"""
    out = (url or "").strip().rstrip("/")
    if out.lower().endswith("/wp-json"):
        out = out[: -len("/wp-json")].rstrip("/")
    return out


class WooCommerceStore:

    platform = PLATFORM_WOOCOMMERCE
    capabilities = frozenset()

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        *,
        page_size: Optional[int] = None,
        list_retries: int = 3,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.page_size = page_size or settings.WOO_PAGE_SIZE
        self.list_retries = list_retries
        self._http = StoreHttpClient(
            f"{self.base_url}/wp-json/wc/v3/",
            vendor="woocommerce",
            headers={"User-Agent": "SyncBridgeHub/WooCommerceStore (+python)"},
            params={"consumer_key": consumer_key, "consumer_secret": consumer_secret},
            timeout=settings.WOO_HTTP_TIMEOUT,
            backoff_max=settings.SYNC_LIST_RETRY_MAX_SLEEP_SEC,
            session=session,
            sleep=sleep,
        )
        self._term_ids: Dict[str, Dict[str, int]] = {"categories": {}, "tags": {}}


    # ---------- 读取 ----------
    def list_items(self, cursor: Optional[str] = None) -> ItemPage:
        page = int(cursor or 1)
        products = self._http.get_json(
            "products",
            {"per_page": self.page_size, "page": page, "status": "any"},
            retries=self.list_retries,
        )
        if not isinstance(products, list):
            raise PayloadError(f"woocommerce products page={page} is not a list")

        items: List[CatalogItem] = []
        for p in products:
            if p.get("type") == "variable" and p.get("variations"):
                items.extend(self._variation_items(p))
                continue
            sku = (p.get("sku") or "").strip()
            if sku:
                items.append(_item_from_product(p))

        next_cursor = str(page + 1) if len(products) >= self.page_size else None
        logger.debug("woocommerce.list.page page=%s products=%s items=%s", page, len(products), len(items))
        return ItemPage(items=items, next_cursor=next_cursor)


    # ---------- 写入 ----------
    """
        创建简单商品；SKU 冲突（已存在/重复）→ 按 SKU 查到后改成更新，返回已有 ref
    """
    def create_item(
        self,
        item: CatalogItem,
        *,
        publish: bool = False,
        location_id: Optional[str] = None,
        sync_fields: Iterable[str] = DEFAULT_SYNC_FIELDS,
    ) -> ItemRef:
        body: Dict[str, Any] = {
            "name": item.title or item.sku,
            "type": "simple",
            "sku": item.sku,
            "status": "publish" if publish else "draft",
        }
        if item.price is not None:
            body["regular_price"] = format_price(item.price)
        if item.stock is not None:
            body.update(_stock_fields(item.stock))
        if item.categories:
            body["categories"] = [{"id": i} for i in self._resolve_terms("categories", item.categories)]
        if item.tags:
            body["tags"] = [{"id": i} for i in self._resolve_terms("tags", item.tags)]
        if item.description:
            body["description"] = item.description

        try:
            resp = self._http.request("POST", "products", json=body)
        except ConnectorError as e:
            if not _is_duplicate_sku(e):
                raise
            existing = self._find_by_sku(item.sku)
            if existing is None:
                raise Conflict(f"woocommerce sku {item.sku} reported duplicate but lookup found nothing") from e
            logger.info("woocommerce.create.exists_update sku=%s product=%s", item.sku, existing.product_id)
            self.update_item(item.sku, existing_item_deltas(item, sync_fields), ref=existing)
            return existing

        created = self._http.as_json(resp)
        ref = ItemRef(product_id=str(created.get("id")))
        logger.info("woocommerce.create.ok sku=%s product=%s", item.sku, ref.product_id)
        return ref


    def update_item(
        self,
        sku: str,
        deltas: Dict[str, Dict[str, Any]],
        *,
        ref: Optional[ItemRef] = None,
        location_id: Optional[str] = None,
    ) -> None:
        if ref is None or not ref.product_id:
            ref = self._find_by_sku(sku)
        if ref is None:
            raise NotFound(f"sku {sku} not found on {self.base_url}")

        body: Dict[str, Any] = {}
        if "price" in deltas:
            price = to_decimal(deltas["price"].get("new"))
            if price is not None:
                body["regular_price"] = format_price(price)
        if "stock" in deltas:
            quantity = to_int(deltas["stock"].get("new"))
            if quantity is not None:
                body.update(_stock_fields(quantity))
        # 变体没有自己的分类/标签
        if not ref.variant_id:
            if "categories" in deltas:
                body["categories"] = [{"id": i} for i in self._resolve_terms("categories", deltas["categories"].get("new") or [])]
            if "tags" in deltas:
                body["tags"] = [{"id": i} for i in self._resolve_terms("tags", deltas["tags"].get("new") or [])]
        if not body:
            return

        self._http.request("PUT", _item_path(ref), json=body)
        logger.info("woocommerce.update.ok sku=%s fields=%s", sku, sorted(body.keys()))


    def set_inventory_level(self, location_id: Optional[str], sku: str, quantity: int) -> None:
        # Woo 没有多 location 库存，location_id 忽略
        self.update_item(sku, {"stock": {"old": None, "new": int(quantity)}})


    def close(self) -> None:
        self._http.close()


    # ---------- Helpers ----------
    def _variation_items(self, product: Dict[str, Any]) -> List[CatalogItem]:
        items: List[CatalogItem] = []
        page = 1
        while True:
            variations = self._http.get_json(
                f"products/{product['id']}/variations",
                {"per_page": self.page_size, "page": page},
                retries=self.list_retries,
            ) or []
            for v in variations:
                if (v.get("sku") or "").strip():
                    items.append(_item_from_variation(product, v))
            if len(variations) < self.page_size:
                return items
            page += 1

    def _find_by_sku(self, sku: str) -> Optional[ItemRef]:
        rows = self._http.get_json("products", {"sku": sku}, retries=self.list_retries) or []
        for row in rows:
            if (row.get("sku") or "").strip() != sku:
                continue
            parent = row.get("parent_id") or 0
            if parent:
                return ItemRef(product_id=str(parent), variant_id=str(row.get("id")))
            return ItemRef(product_id=str(row.get("id")))
        return None

    """
        分类/标签名 → term id：先 search 精确匹配（大小写不敏感），没有就创建；进程内缓存
    """
    def _resolve_terms(self, kind: str, names: Iterable[str]) -> List[int]:
        cache = self._term_ids[kind]
        ids: List[int] = []
        for name in clean_terms(names):
            key = name.lower()
            if key not in cache:
                rows = self._http.get_json(f"products/{kind}", {"search": name, "per_page": 100}, retries=self.list_retries) or []
                hit = next((r for r in rows if (r.get("name") or "").strip().lower() == key), None)
                if hit:
                    cache[key] = int(hit["id"])
                else:
                    cache[key] = self._create_term(kind, name)
            ids.append(cache[key])
        return ids

    def _create_term(self, kind: str, name: str) -> int:
        try:
            created = self._http.as_json(self._http.request("POST", f"products/{kind}", json={"name": name}))
            return int(created["id"])
        except ConnectorError as e:
            # 并发下别人刚建好：Woo 返回 400 term_exists + data.resource_id
            existing = _term_exists_id(e.body)
            if existing is None:
                raise
            return existing



# ---------- 解析 ----------
def _stock_of(row: Dict[str, Any]) -> int:
    qty = row.get("stock_quantity")
    if isinstance(qty, (int, float)):
        return int(qty)
    return 1 if row.get("stock_status") == "instock" else 0


def _item_from_product(p: Dict[str, Any]) -> CatalogItem:
    return CatalogItem(
        sku=(p.get("sku") or "").strip(),
        title=(p.get("name") or "").strip(),
        price=to_decimal(p.get("regular_price") or p.get("price")),
        stock=_stock_of(p),
        categories=clean_terms(c.get("name") for c in p.get("categories") or []),
        tags=clean_terms(t.get("name") for t in p.get("tags") or []),
        ref=ItemRef(product_id=str(p.get("id"))),
    )


def _item_from_variation(p: Dict[str, Any], v: Dict[str, Any]) -> CatalogItem:
    title = (p.get("name") or "").strip()
    options = [a.get("option") for a in v.get("attributes") or [] if a.get("option")]
    if options:
        title = f"{title} - {' / '.join(options)}"
    return CatalogItem(
        sku=(v.get("sku") or "").strip(),
        title=title,
        price=to_decimal(v.get("regular_price") or v.get("price") or p.get("regular_price")),
        stock=_stock_of(v),
        categories=clean_terms(c.get("name") for c in p.get("categories") or []),
        tags=clean_terms(t.get("name") for t in p.get("tags") or []),
        ref=ItemRef(product_id=str(p.get("id")), variant_id=str(v.get("id"))),
    )


def _stock_fields(quantity: int) -> Dict[str, Any]:
    return {
        "manage_stock": True,
        "stock_quantity": int(quantity),
        "stock_status": "instock" if int(quantity) > 0 else "outofstock",
    }


def _item_path(ref: ItemRef) -> str:
    if ref.variant_id:
        return f"products/{ref.product_id}/variations/{ref.variant_id}"
    return f"products/{ref.product_id}"


def _is_duplicate_sku(err: ConnectorError) -> bool:
    if isinstance(err, Conflict):
        return True
    if err.status_code != 400:
        return False
    text = f"{err} {err.body or ''}".lower()
    return any(m in text for m in _DUPLICATE_SKU_MARKERS)


def _term_exists_id(body: Optional[str]) -> Optional[int]:
    try:
        data = json.loads(body or "")
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("code") != "term_exists":
        return None
    resource_id = (data.get("data") or {}).get("resource_id")
    return int(resource_id) if resource_id else None
