from __future__ import annotations
import re
from typing import Optional

SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def is_valid_shop_domain(value: Optional[str]) -> bool:
    return bool(value) and bool(SHOP_DOMAIN_RE.match(value))


def normalize_shop_domain(value: Optional[str]) -> str:
    """去协议/斜杠，转小写；没有点的当作店铺名补 .myshopify.com。"""
    shop = _SCHEME_RE.sub("", (value or "").strip()).strip("/").lower()
    if shop and "." not in shop:
        shop = f"{shop}.myshopify.com"
    return shop


def has_scheme(url: Optional[str]) -> bool:
    return bool(url) and bool(_SCHEME_RE.match(url))
