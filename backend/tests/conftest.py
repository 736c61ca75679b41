"""
公共 fixture：内存 SQLite + 假店铺连接器
  - 环境变量必须在导入 syncbridge 之前设好（Settings 在导入时实例化）
  - StaticPool：所有 session 共用同一条连接，才能看到同一个内存库
"""
from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SHOPIFY_API_KEY", "test-api-key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test-api-secret")
os.environ.setdefault("APP_URL", "https://app.syncbridge.test")
os.environ.setdefault("BACKEND_CORS_ORIGINS", "https://app.syncbridge.test")
os.environ.setdefault("SYNC_BACKOFF_JITTER", "0")

import json
from dataclasses import replace
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from syncbridge.db.base import Base
import syncbridge.db.model  # noqa: F401  注册所有表
from syncbridge.db.model.connection import Connection
from syncbridge.db.model.installation import Installation
from syncbridge.integrations.connector import (
    CAP_COLLECTIONS, CAP_INVENTORY_LEVELS, DEFAULT_SYNC_FIELDS, CatalogItem, ItemPage, ItemRef, to_decimal, to_int,
)
from syncbridge.integrations.errors import NotFound
from syncbridge.orchestration import scheduler_tick
from syncbridge.orchestration.connection_sync import sync_task
from syncbridge.orchestration.connection_sync.executor import StepResult, run_job_step
from syncbridge.repository import installation_repo, sync_job_repo
from syncbridge.services import connection_service
from syncbridge.utils.secrets import encrypt_value


SOURCE_SHOP = "supplier.myshopify.com"
DEST_SHOP = "retailer.myshopify.com"


# ---------- 假连接器 ----------
class FakeStore:
    """
    内存里的店铺：list_items 按 page_size 分页（游标 = 偏移量字符串）
    errors: {sku: [异常, 异常, ...]}，每次写该 SKU 时弹出一个抛出，弹完后正常
    """

    platform = "shopify"

    def __init__(
        self,
        items: Iterable[CatalogItem] = (),
        *,
        page_size: int = 2,
        capabilities: Iterable[str] = (CAP_COLLECTIONS, CAP_INVENTORY_LEVELS),
        errors: Optional[Dict[str, List[Exception]]] = None,
        list_error: Optional[Exception] = None,
    ) -> None:
        self.items = list(items)
        self.page_size = page_size
        self.capabilities = frozenset(capabilities)
        self.errors = {sku: list(errs) for sku, errs in (errors or {}).items()}
        self.list_error = list_error
        self.created: List[CatalogItem] = []
        self.create_fields: List[tuple] = []
        self.updated: List[tuple] = []
        self.list_calls = 0
        self.closed = False

    def list_items(self, cursor: Optional[str] = None) -> ItemPage:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        start = int(cursor or 0)
        end = start + self.page_size
        return ItemPage(items=self.items[start:end], next_cursor=str(end) if end < len(self.items) else None)

    def _maybe_fail(self, sku: str) -> None:
        queue = self.errors.get(sku)
        if queue:
            raise queue.pop(0)

    def create_item(
        self, item: CatalogItem, *,
        publish: bool = False, location_id: Optional[str] = None, sync_fields: Iterable[str] = DEFAULT_SYNC_FIELDS,
    ) -> ItemRef:
        self._maybe_fail(item.sku)
        self.created.append(item)
        self.create_fields.append(tuple(sync_fields))
        return ItemRef(product_id=f"p-{item.sku}", variant_id=f"v-{item.sku}")

    def update_item(self, sku: str, deltas: Dict[str, Dict[str, Any]], *, ref: Optional[ItemRef] = None, location_id: Optional[str] = None) -> None:
        self._maybe_fail(sku)
        self.updated.append((sku, deltas))

    def set_inventory_level(self, location_id: Optional[str], sku: str, quantity: int) -> None:
        self.update_item(sku, {"stock": {"old": None, "new": quantity}}, location_id=location_id)

    def close(self) -> None:
        self.closed = True


class CatalogStore(FakeStore):
    """
    会真正改自己 items 的 FakeStore：create 追加一行，update 按 deltas 改字段
    用来验证"落地后再算一次计划"
    """

    def create_item(self, item: CatalogItem, **kwargs: Any) -> ItemRef:
        ref = super().create_item(item, **kwargs)
        self.items.append(replace(item, ref=ref))
        return ref

    def update_item(self, sku: str, deltas: Dict[str, Dict[str, Any]], **kwargs: Any) -> None:
        super().update_item(sku, deltas, **kwargs)
        for i, current in enumerate(self.items):
            if current.sku != sku:
                continue
            changes: Dict[str, Any] = {}
            for name, delta in deltas.items():
                new = delta.get("new")
                if name == "price":
                    changes["price"] = to_decimal(new)
                elif name == "stock":
                    changes["stock"] = to_int(new)
                else:
                    changes[name] = tuple(new or ())
            self.items[i] = replace(current, **changes)
            return
        raise NotFound(f"sku {sku} not in catalog")


class RecordingDispatcher:
    """替代 Celery 派发：只记下 job id。"""

    def __init__(self) -> None:
        self.job_ids: List[str] = []

    def __call__(self, job_id: str) -> None:
        self.job_ids.append(job_id)


# ---------- 假 HTTP ----------
def make_response(status: int = 200, body: Any = None, *, headers: Optional[Dict[str, str]] = None, text: Optional[str] = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if text is not None:
        resp._content = text.encode("utf-8")
    else:
        resp._content = json.dumps(body).encode("utf-8") if body is not None else b""
    resp.headers.update(headers or {})
    resp.encoding = "utf-8"
    return resp


class FakeSession:
    """
    替代 requests.Session：按顺序吐出预设响应（异常实例则直接抛出），记录每次调用
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: List[SimpleNamespace] = []
        self.closed = False

    def request(self, method, url, headers=None, params=None, timeout=None, **kwargs):
        self.calls.append(SimpleNamespace(
            method=method, url=url, headers=headers or {}, params=params or {}, json=kwargs.get("json"),
        ))
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def close(self) -> None:
        self.closed = True


# ---------- DB ----------
@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    # Celery 任务入口自己开 session
    monkeypatch.setattr(sync_task, "SessionLocal", factory)
    monkeypatch.setattr(scheduler_tick, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ---------- 业务数据 ----------
@pytest.fixture
def make_installation(db) -> Callable[..., Installation]:
    def _make(shop: str = SOURCE_SHOP, token: Optional[str] = "shpat_source_token", scopes: str = "read_products") -> Installation:
        row, _ = installation_repo.upsert_token(db, shop, encrypt_value(token) if token else None, scopes)
        return row
    return _make


@pytest.fixture
def installation(make_installation) -> Installation:
    return make_installation()


@pytest.fixture
def make_connection(db) -> Callable[..., Connection]:
    def _make(owner: Installation, **overrides: Any) -> Connection:
        data: Dict[str, Any] = {
            "name": "Retailer",
            "platform": "shopify",
            "dest_shop_domain": DEST_SHOP,
            "dest_access_token": "shpat_dest_token",
        }
        data.update(overrides)
        return connection_service.create_connection(db, owner, data)
    return _make


@pytest.fixture
def connection(installation, make_connection) -> Connection:
    return make_connection(installation)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def fake_store():
    """返回 FakeStore 类本身，测试里按需构造。"""
    return FakeStore


@pytest.fixture
def catalog_store():
    return CatalogStore


@pytest.fixture
def http():
    """(FakeSession, make_response)"""
    return SimpleNamespace(session=FakeSession, response=make_response)


# ---------- 执行器驱动 ----------
@pytest.fixture
def drive_job(db) -> Callable[..., List[StepResult]]:
    """
    反复调用 run_job_step 直到 done；遇到等待就把 next_attempt_at 清掉（不真的睡）
    """
    def _drive(job_id: str, source: FakeStore, dest: FakeStore, max_steps: int = 50) -> List[StepResult]:
        results: List[StepResult] = []
        for _ in range(max_steps):
            result = run_job_step(db, job_id, source_factory=lambda _inst: source, dest_factory=lambda _conn: dest)
            results.append(result)
            if result.done:
                return results
            for item in sync_job_repo.list_items(db, job_id, state="pending"):
                sync_job_repo.update_item(db, item.id, next_attempt_at=None)
        raise AssertionError(f"job {job_id} did not finish in {max_steps} steps")
    return _drive
