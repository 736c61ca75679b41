"""
店铺连接器能力接口（与平台无关）
  - 每个平台一个实现（ShopifyStore / WooCommerceStore），调用方只依赖这里的 Protocol
  - CatalogItem 是两端比较用的统一商品形状（一个 SKU 一行）
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Optional, Protocol, Tuple


# 平台能力标记
CAP_COLLECTIONS = "collections"            # 有 collection 概念（Shopify）
CAP_INVENTORY_LEVELS = "inventory_levels"  # 库存按 location 单独写（Shopify）

# create_item 撞上已存在 SKU 时默认只覆盖价格（库存总是写）
DEFAULT_SYNC_FIELDS = ("price",)


@dataclass(frozen=True, slots=True)
class ItemRef:
    """目标店铺上的商品定位信息（不同平台用到的字段不同）。"""
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    inventory_item_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "inventory_item_id": self.inventory_item_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ItemRef":
        data = data or {}
        return cls(
            product_id=data.get("product_id"),
            variant_id=data.get("variant_id"),
            inventory_item_id=data.get("inventory_item_id"),
        )


@dataclass(frozen=True, slots=True)
class CatalogItem:
    sku: str
    title: str = ""
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    categories: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    collections: Tuple[str, ...] = ()
    vendor: Optional[str] = None
    description: Optional[str] = None
    ref: ItemRef = field(default_factory=ItemRef)

    def to_payload(self) -> Dict[str, Any]:
        """JSON 友好的创建载荷（存进 sync_job_items.payload）。"""
        return {
            "sku": self.sku,
            "title": self.title,
            "price": format_price(self.price),
            "stock": self.stock,
            "categories": list(self.categories),
            "tags": list(self.tags),
            "collections": list(self.collections),
            "vendor": self.vendor,
            "description": self.description,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CatalogItem":
        return cls(
            sku=str(data.get("sku") or ""),
            title=str(data.get("title") or ""),
            price=to_decimal(data.get("price")),
            stock=to_int(data.get("stock")),
            categories=tuple(data.get("categories") or ()),
            tags=tuple(data.get("tags") or ()),
            collections=tuple(data.get("collections") or ()),
            vendor=data.get("vendor"),
            description=data.get("description"),
        )


@dataclass(slots=True)
class ItemPage:
    items: List[CatalogItem]
    next_cursor: Optional[str] = None   # 不透明游标；None 表示最后一页


class StoreConnector(Protocol):
    """执行器 / 预览依赖的能力集合。"""

    platform: str
    capabilities: FrozenSet[str]

    def list_items(self, cursor: Optional[str] = None) -> ItemPage: ...

    def create_item(
        self, item: CatalogItem, *,
        publish: bool = False, location_id: Optional[str] = None, sync_fields: Iterable[str] = DEFAULT_SYNC_FIELDS,
    ) -> ItemRef: ...

    def update_item(
        self, sku: str, deltas: Dict[str, Dict[str, Any]], *,
        ref: Optional[ItemRef] = None, location_id: Optional[str] = None,
    ) -> None: ...

    def set_inventory_level(self, location_id: Optional[str], sku: str, quantity: int) -> None: ...


def iter_items(connector: StoreConnector, cursor: Optional[str] = None) -> Iterator[CatalogItem]:
    """
    惰性遍历所有分页；从给定游标开始，可从任意页重新开始。
    """
    while True:
        page = connector.list_items(cursor)
        yield from page.items
        if not page.next_cursor or page.next_cursor == cursor:
            return
        cursor = page.next_cursor


def existing_item_deltas(item: CatalogItem, sync_fields: Iterable[str] = DEFAULT_SYNC_FIELDS) -> Dict[str, Dict[str, Any]]:
    """
    创建时发现 SKU 已存在，改走更新：库存总是写，价格 / 分类 / 标签 / collection 只在 sync_fields 里才写
    """
    fields = set(sync_fields)
    deltas: Dict[str, Dict[str, Any]] = {}
    if "price" in fields and item.price is not None:
        deltas["price"] = {"old": None, "new": format_price(item.price)}
    if item.stock is not None:
        deltas["stock"] = {"old": None, "new": item.stock}
    for name in ("categories", "tags", "collections"):
        if name in fields:
            deltas[name] = {"old": [], "new": list(getattr(item, name))}
    return deltas


# ---------- 值规范化 ----------
def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None


def format_price(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


def clean_terms(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    """去空白、去重（大小写不敏感，保留首次出现的写法）。"""
    seen: set[str] = set()
    out: List[str] = []
    for v in values or ():
        s = str(v).strip() if v is not None else ""
        if s and s.lower() not in seen:
            seen.add(s.lower())
            out.append(s)
    return tuple(out)
