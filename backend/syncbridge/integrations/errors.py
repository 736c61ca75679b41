"""
   店铺连接器（Shopify / WooCommerce）统一异常类型。
   把 HTTP 状态码 / 限流 / 网络错误映射为与平台无关的分类，执行器只依赖这里。
"""

from __future__ import annotations
from typing import Optional


class ConnectorError(Exception):
    """Base for all store connector errors."""

    def __init__(self, message: str = "", *, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimited(ConnectorError):
    """429 / throttled; retry_after is the upstream hint in seconds (may be None)."""

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class Unauthorized(ConnectorError):
    """Credential invalid or revoked (401/403). Never retried."""


class NotFound(ConnectorError):
    """Item / resource does not exist on the store."""


class Conflict(ConnectorError):
    """Item already exists (duplicate SKU / handle)."""


class TransientNetworkError(ConnectorError):
    """Connect / read timeout or other transport failure."""


class UpstreamServerError(ConnectorError):
    """5xx or 408 from the store."""


class PayloadError(ConnectorError):
    """Unexpected / invalid response payload shape or content."""


def is_transient(err: BaseException) -> bool:
    return isinstance(err, (RateLimited, TransientNetworkError, UpstreamServerError))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After 只支持秒数；HTTP-date 等格式返回 None，交给退避计算。"""
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return max(0.0, seconds)
