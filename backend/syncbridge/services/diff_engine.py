"""
源店铺 vs 目标店铺的差异计划（纯函数，不碰 DB / 网络）
  - 输出顺序 = 源商品顺序；同样输入永远得到同样计划
  - 每个源 SKU 恰好一个 PlanItem：create / update / skip（skip 带原因）
  - 价格按 2 位小数比较；分类/标签/collection 按大小写不敏感的集合比较
"""

from __future__ import annotations
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from syncbridge.integrations.connector import (
    CAP_COLLECTIONS, CatalogItem, ItemRef, clean_terms, format_price, to_decimal,
)


ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"

# skip 原因
REASON_MISSING_SKU = "missing sku"
REASON_DUPLICATE_SOURCE = "duplicate source sku"
REASON_FILTERED = "filtered out by mapping rules"
REASON_AMBIGUOUS = "ambiguous match"
REASON_CREATION_DISABLED = "creation disabled"
REASON_NO_CHANGES = "no changes"

_CENT = Decimal("0.01")


# ---------- Mapping rules ----------
@dataclass(frozen=True, slots=True)
class MappingFilters:
    tags: Tuple[str, ...] = ()
    exclude_tags: Tuple[str, ...] = ()
    product_type: Tuple[str, ...] = ()
    vendor: Tuple[str, ...] = ()
    price_min: Optional[Decimal] = None
    price_max: Optional[Decimal] = None
    inventory_min: Optional[int] = None
    inventory_max: Optional[int] = None


@dataclass(frozen=True, slots=True)
class MappingRules:
    price_multiplier: Optional[Decimal] = None
    price_adjustment: Optional[Decimal] = None
    include_only_skus: Tuple[str, ...] = ()
    exclude_skus: Tuple[str, ...] = ()
    filters: MappingFilters = field(default_factory=MappingFilters)
    # 字段覆盖：目标端统一写成指定的 product_type / vendor / tags
    map_product_type: Optional[str] = None
    map_vendor: Optional[str] = None
    map_tags: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "MappingRules":
        """解析 connections.mapping_rules；格式不对抛 ValueError。"""
        if not raw:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("mapping_rules must be an object")

        f = raw.get("filters") or {}
        if not isinstance(f, dict):
            raise ValueError("mapping_rules.filters must be an object")
        fm = raw.get("field_mapping") or {}
        if not isinstance(fm, dict):
            raise ValueError("mapping_rules.field_mapping must be an object")

        map_tags = fm.get("tags")
        return cls(
            price_multiplier=_num("price_multiplier", raw.get("price_multiplier")),
            price_adjustment=_num("price_adjustment", raw.get("price_adjustment")),
            include_only_skus=_str_list("include_only_skus", raw.get("include_only_skus")),
            exclude_skus=_str_list("exclude_skus", raw.get("exclude_skus")),
            filters=MappingFilters(
                tags=_str_list("filters.tags", f.get("tags")),
                exclude_tags=_str_list("filters.exclude_tags", f.get("exclude_tags")),
                product_type=_str_list("filters.product_type", f.get("product_type")),
                vendor=_str_list("filters.vendor", f.get("vendor")),
                price_min=_num("filters.price_min", f.get("price_min")),
                price_max=_num("filters.price_max", f.get("price_max")),
                inventory_min=_int("filters.inventory_min", f.get("inventory_min")),
                inventory_max=_int("filters.inventory_max", f.get("inventory_max")),
            ),
            map_product_type=(str(fm["product_type"]).strip() or None) if fm.get("product_type") else None,
            map_vendor=(str(fm["vendor"]).strip() or None) if fm.get("vendor") else None,
            map_tags=_str_list("field_mapping.tags", map_tags) if map_tags is not None else None,
        )


def passes_filters(item: CatalogItem, rules: MappingRules) -> bool:
    if rules.include_only_skus and item.sku not in rules.include_only_skus:
        return False
    if item.sku in rules.exclude_skus:
        return False

    f = rules.filters
    item_tags = {t.lower() for t in item.tags}
    if f.tags and not any(t.lower() in item_tags for t in f.tags):
        return False
    if f.exclude_tags and any(t.lower() in item_tags for t in f.exclude_tags):
        return False

    product_type = (item.categories[0] if item.categories else "").lower()
    if f.product_type and product_type not in {p.lower() for p in f.product_type}:
        return False
    if f.vendor and (item.vendor or "").lower() not in {v.lower() for v in f.vendor}:
        return False

    if item.price is not None:
        if f.price_min is not None and item.price < f.price_min:
            return False
        if f.price_max is not None and item.price > f.price_max:
            return False
    if item.stock is not None:
        if f.inventory_min is not None and item.stock < f.inventory_min:
            return False
        if f.inventory_max is not None and item.stock > f.inventory_max:
            return False
    return True


def apply_mapping(item: CatalogItem, rules: MappingRules) -> CatalogItem:
    """价格：先乘倍率再加减固定值（四舍五入到分）；再做字段覆盖。"""
    changes: Dict[str, Any] = {}
    price = item.price
    if price is not None:
        if rules.price_multiplier is not None:
            price = (price * rules.price_multiplier).quantize(_CENT, rounding=ROUND_HALF_UP)
        if rules.price_adjustment is not None:
            price = (price + rules.price_adjustment).quantize(_CENT, rounding=ROUND_HALF_UP)
        if price != item.price:
            changes["price"] = price
    if rules.map_product_type:
        changes["categories"] = (rules.map_product_type,)
    if rules.map_vendor:
        changes["vendor"] = rules.map_vendor
    if rules.map_tags is not None:
        changes["tags"] = clean_terms(rules.map_tags)
    return replace(item, **changes) if changes else item


# ---------- Sync rules ----------
@dataclass(frozen=True, slots=True)
class SyncRules:
    sync_price: bool = True
    sync_categories: bool = False
    sync_tags: bool = False
    sync_collections: bool = False
    create_missing: bool = True
    publish_new: bool = False
    mapping: MappingRules = field(default_factory=MappingRules)

    @classmethod
    def from_connection(cls, connection: Any, *, capabilities: Optional[Iterable[str]] = None) -> "SyncRules":
        """
        capabilities 为目标连接器的能力集；目标端没有 collection 概念时关闭 sync_collections，
        否则每次都会算出永远落不了地的 delta
        """
        sync_collections = bool(connection.sync_collections)
        if capabilities is not None and CAP_COLLECTIONS not in set(capabilities):
            sync_collections = False
        return cls(
            sync_price=bool(connection.sync_price),
            sync_categories=bool(connection.sync_categories),
            sync_tags=bool(connection.sync_tags),
            sync_collections=sync_collections,
            create_missing=bool(connection.create_missing),
            publish_new=bool(connection.publish_new),
            mapping=MappingRules.from_dict(connection.mapping_rules),
        )

    def write_fields(self) -> Tuple[str, ...]:
        """规则打开的可写字段（库存不在其中，总是同步）"""
        flags = (
            ("price", self.sync_price),
            ("categories", self.sync_categories),
            ("tags", self.sync_tags),
            ("collections", self.sync_collections),
        )
        return tuple(name for name, on in flags if on)


# ---------- Plan ----------
@dataclass(frozen=True, slots=True)
class FieldDelta:
    field: str
    old: Any
    new: Any


@dataclass(frozen=True, slots=True)
class PlanItem:
    sku: str
    action: str
    item: Optional[CatalogItem] = None           # 映射后的源商品
    deltas: Tuple[FieldDelta, ...] = ()
    reason: Optional[str] = None
    dest_ref: Optional[ItemRef] = None

    @property
    def actionable(self) -> bool:
        return self.action in (ACTION_CREATE, ACTION_UPDATE)

    def deltas_dict(self) -> Dict[str, Dict[str, Any]]:
        return {d.field: {"old": d.old, "new": d.new} for d in self.deltas}

    def to_payload(self) -> Dict[str, Any]:
        """存进 sync_job_items.payload；执行器据此调用连接器。"""
        payload: Dict[str, Any] = {}
        if self.item is not None:
            payload["item"] = self.item.to_payload()
        if self.action == ACTION_UPDATE:
            payload["deltas"] = self.deltas_dict()
        if self.dest_ref is not None:
            payload["ref"] = self.dest_ref.to_dict()
        return payload


def compute_plan(
    source_items: Iterable[CatalogItem],
    destination_items: Iterable[CatalogItem],
    rules: SyncRules,
) -> List[PlanItem]:
    dest_index: Dict[str, List[CatalogItem]] = defaultdict(list)
    for d in destination_items:
        sku = (d.sku or "").strip()
        if sku:
            dest_index[sku].append(d)

    plan: List[PlanItem] = []
    seen: set[str] = set()

    for src in source_items:
        sku = (src.sku or "").strip()
        if not sku:
            plan.append(PlanItem(sku="", action=ACTION_SKIP, reason=REASON_MISSING_SKU))
            continue
        if sku in seen:
            plan.append(PlanItem(sku=sku, action=ACTION_SKIP, reason=REASON_DUPLICATE_SOURCE))
            continue
        seen.add(sku)

        if not passes_filters(src, rules.mapping):
            plan.append(PlanItem(sku=sku, action=ACTION_SKIP, reason=REASON_FILTERED))
            continue
        mapped = apply_mapping(src, rules.mapping)

        matches = dest_index.get(sku) or []
        if len(matches) > 1:
            plan.append(PlanItem(sku=sku, action=ACTION_SKIP, item=mapped, reason=REASON_AMBIGUOUS))
            continue

        if not matches:
            if rules.create_missing:
                plan.append(PlanItem(sku=sku, action=ACTION_CREATE, item=mapped))
            else:
                plan.append(PlanItem(sku=sku, action=ACTION_SKIP, item=mapped, reason=REASON_CREATION_DISABLED))
            continue

        dest = matches[0]
        deltas = _field_deltas(mapped, dest, rules)
        if deltas:
            plan.append(PlanItem(sku=sku, action=ACTION_UPDATE, item=mapped, deltas=deltas, dest_ref=dest.ref))
        else:
            plan.append(PlanItem(sku=sku, action=ACTION_SKIP, item=mapped, reason=REASON_NO_CHANGES, dest_ref=dest.ref))

    return plan


def _field_deltas(src: CatalogItem, dest: CatalogItem, rules: SyncRules) -> Tuple[FieldDelta, ...]:
    deltas: List[FieldDelta] = []

    if rules.sync_price and src.price is not None and to_decimal(src.price) != to_decimal(dest.price):
        deltas.append(FieldDelta("price", format_price(dest.price), format_price(src.price)))

    for flag, name in (
        (rules.sync_categories, "categories"),
        (rules.sync_tags, "tags"),
        (rules.sync_collections, "collections"),
    ):
        if not flag:
            continue
        new, old = getattr(src, name), getattr(dest, name)
        if not same_terms(new, old):
            deltas.append(FieldDelta(name, list(old), list(new)))

    # 库存总是同步
    if src.stock is not None and src.stock != dest.stock:
        deltas.append(FieldDelta("stock", dest.stock, src.stock))

    return tuple(deltas)


def same_terms(a: Sequence[str], b: Sequence[str]) -> bool:
    return {x.strip().lower() for x in a if x and x.strip()} == {x.strip().lower() for x in b if x and x.strip()}


# ---------- 预览 / 摘要 ----------
def summarize_plan(plan: Sequence[PlanItem]) -> Dict[str, Any]:
    by_action = Counter(p.action for p in plan)
    by_reason = Counter(p.reason for p in plan if p.action == ACTION_SKIP and p.reason)
    return {
        "total": len(plan),
        "create": by_action.get(ACTION_CREATE, 0),
        "update": by_action.get(ACTION_UPDATE, 0),
        "skip": by_action.get(ACTION_SKIP, 0),
        "by_reason": dict(sorted(by_reason.items())),
    }


def preview_plan(plan: Sequence[PlanItem], limit: int = 50) -> Dict[str, Any]:
    summary = summarize_plan(plan)
    preview_items: List[Dict[str, Any]] = []
    for p in plan[: max(0, limit)]:
        row: Dict[str, Any] = {"sku": p.sku, "action": p.action}
        if p.item is not None:
            row["title"] = p.item.title
            row["price"] = format_price(p.item.price)
            row["stock"] = p.item.stock
        if p.reason:
            row["reason"] = p.reason
        if p.deltas:
            row["changes"] = p.deltas_dict()
        preview_items.append(row)

    return {
        "total_items": summary["total"],
        "items_to_sync": summary["create"] + summary["update"],
        "items_to_create": summary["create"],
        "items_to_update": summary["update"],
        "items_to_skip": summary["skip"],
        "by_reason": summary["by_reason"],
        "preview_items": preview_items,
    }


# ---------- 解析小工具 ----------
def _num(name: str, value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    d = to_decimal(value)
    if d is None:
        raise ValueError(f"{name} must be a number")
    # 倍率保留原始精度
    return Decimal(str(value))


def _int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer") from None


def _str_list(name: str, value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"{name} must be a list of strings")
    return tuple(str(v).strip() for v in value if v is not None and str(v).strip())
