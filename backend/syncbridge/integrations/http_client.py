"""
低层 HTTP 客户端：状态码分类 / 有限重试 / 日志
  - Shopify GraphQL、WooCommerce REST、OAuth token 交换共用
  - 读操作（分页拉取）允许在客户端内做少量阻塞退避重试；
    写操作 retries=0，直接把分类后的异常交给执行器，由 item 级重试状态接管
"""

from __future__ import annotations
import logging, random, time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin

import requests

from syncbridge.integrations.errors import (
    ConnectorError, RateLimited, Unauthorized, NotFound, Conflict,
    TransientNetworkError, UpstreamServerError, PayloadError, is_transient, parse_retry_after,
)

logger = logging.getLogger(__name__)


def raise_for_store_status(resp: requests.Response, *, vendor: str = "store") -> None:
    """把非 2xx 响应映射为连接器异常；2xx 直接返回。"""
    status = resp.status_code
    if status < 400:
        return

    snippet = (resp.text or "")[:500]   # 截断，避免日志/异常过大
    if status == 429:
        raise RateLimited(
            f"{vendor} 429 throttled",
            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            status_code=status, body=snippet,
        )
    if status in (401, 403):
        raise Unauthorized(f"{vendor} {status} unauthorized", status_code=status, body=snippet)
    if status == 404:
        raise NotFound(f"{vendor} 404 not found", status_code=status, body=snippet)
    if status == 409:
        raise Conflict(f"{vendor} 409 conflict: {snippet}", status_code=status, body=snippet)
    if status == 408 or status >= 500:
        raise UpstreamServerError(f"{vendor} {status} server error", status_code=status, body=snippet)
    raise ConnectorError(f"{vendor} {status} client error: {snippet}", status_code=status, body=snippet)


class StoreHttpClient:
    """单店铺的 requests.Session 封装：统一超时、头、query 参数和错误分类。"""

    def __init__(
        self,
        base_url: str,
        *,
        vendor: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.vendor = vendor
        self.timeout = timeout
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._params = dict(params or {})
        self._session = session or requests.Session()
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep


    # ---------- Public ----------
    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None, *, retries: int = 0) -> Any:
        resp = self.request("GET", path, params=params, retries=retries)
        return self.as_json(resp)

    def request(self, method: str, path: str, *, retries: int = 0, **kwargs) -> requests.Response:
        """执行一次请求；retries>0 时对限流/网络/5xx 做阻塞退避重试。"""
        url = path if path.startswith("http") else urljoin(self.base_url, path.lstrip("/"))
        headers = {**self._headers, **(kwargs.pop("headers", None) or {})}
        params = {**self._params, **(kwargs.pop("params", None) or {})}
        timeout = kwargs.pop("timeout", self.timeout)

        attempt = 0
        while True:
            start = time.perf_counter()
            try:
                try:
                    resp = self._session.request(
                        method, url, headers=headers, params=params or None, timeout=timeout, **kwargs
                    )
                except requests.Timeout as e:
                    raise TransientNetworkError(f"{self.vendor} timeout: {e}") from e
                except requests.RequestException as e:
                    raise TransientNetworkError(f"{self.vendor} request error: {type(e).__name__}: {e}") from e

                latency_ms = int((time.perf_counter() - start) * 1000)
                raise_for_store_status(resp, vendor=self.vendor)
                logger.debug("%s.http.ok method=%s path=%s status=%s latency_ms=%s",
                             self.vendor, method, path, resp.status_code, latency_ms)
                return resp

            except ConnectorError as e:
                retry_after = getattr(e, "retry_after", None)
                if not is_transient(e) or attempt >= retries:
                    raise
                # 上游要求等得比 backoff_max 还久：不在 worker 里睡，抛给调用方
                if retry_after is not None and retry_after > self._backoff_max:
                    raise
                attempt += 1
                delay = self._backoff(attempt, retry_after)
                logger.warning("%s.http.retry method=%s path=%s attempt=%s/%s err=%s sleep=%.2fs",
                               self.vendor, method, path, attempt, retries, type(e).__name__, delay)
                self._sleep(delay)

    def as_json(self, resp: requests.Response) -> Any:
        """解析 JSON；失败时截取文本抛 PayloadError。"""
        try:
            return resp.json()
        except ValueError as e:
            text = (resp.text or "")[:500]
            raise PayloadError(f"{self.vendor} non-JSON response (status={resp.status_code}): {text}") from e

    def close(self) -> None:
        self._session.close()


    # ---------- Helpers ----------
    # 指数退避，加 0~25% 抖动；Retry-After 优先
    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(self._backoff_max, max(0.1, retry_after))
        base = min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)
        return base + random.uniform(0, 0.25 * base)
