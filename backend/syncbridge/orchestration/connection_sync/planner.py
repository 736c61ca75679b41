"""
计划阶段：拉源/目标全量 → compute_plan
  - 执行器（落库 items）和只读预览共用这一份
  - 连接器由工厂构造，测试里注入假的
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from syncbridge.core.config import settings
from syncbridge.db.model.connection import Connection
from syncbridge.db.model.installation import Installation
from syncbridge.integrations import factory
from syncbridge.integrations.connector import CatalogItem, StoreConnector, iter_items
from syncbridge.integrations.errors import ConnectorError, Unauthorized
from syncbridge.repository import installation_repo
from syncbridge.services import connection_service
from syncbridge.services.diff_engine import PlanItem, SyncRules, compute_plan, preview_plan
from syncbridge.services.errors import NeedsReinstall, UpstreamUnavailable, ValidationError


logger = logging.getLogger(__name__)

SIDE_SOURCE = "source"
SIDE_DESTINATION = "destination"

SourceFactory = Callable[[Installation], StoreConnector]
DestinationFactory = Callable[[Connection], StoreConnector]


class SideUnauthorized(Exception):
    """某一端凭证失效；side 决定 disable 原因。"""

    def __init__(self, side: str, cause: Unauthorized) -> None:
        super().__init__(f"{side} unauthorized: {cause}")
        self.side = side
        self.cause = cause


@dataclass(slots=True)
class Connectors:
    source: StoreConnector
    destination: StoreConnector

    def close(self) -> None:
        for c in (self.source, self.destination):
            close = getattr(c, "close", None)
            if callable(close):
                close()


def open_destination(connection: Connection, dest_factory: Optional[DestinationFactory] = None) -> StoreConnector:
    try:
        return (dest_factory or factory.build_destination_connector)(connection)
    except Unauthorized as e:
        raise SideUnauthorized(SIDE_DESTINATION, e) from e


def open_connectors(
    installation: Installation,
    connection: Connection,
    *,
    source_factory: Optional[SourceFactory] = None,
    dest_factory: Optional[DestinationFactory] = None,
) -> Connectors:
    try:
        source = (source_factory or factory.build_source_connector)(installation)
    except Unauthorized as e:
        raise SideUnauthorized(SIDE_SOURCE, e) from e
    try:
        destination = open_destination(connection, dest_factory)
    except Exception:
        close = getattr(source, "close", None)
        if callable(close):
            close()
        raise
    return Connectors(source=source, destination=destination)


def _list_side(side: str, connector: StoreConnector) -> List[CatalogItem]:
    try:
        return list(iter_items(connector))
    except Unauthorized as e:
        raise SideUnauthorized(side, e) from e


# ---------- plan ----------
def build_plan(
    connection: Connection,
    connectors: Connectors,
    *,
    scope_skus: Optional[Iterable[str]] = None,
) -> List[PlanItem]:
    """
    scope_skus 非空时（incremental）只比较这些 SKU；目标端仍拉全量，用于歧义匹配判断
    """
    source_items = _list_side(SIDE_SOURCE, connectors.source)
    if scope_skus is not None:
        scope = {s.strip() for s in scope_skus if s and s.strip()}
        source_items = [i for i in source_items if (i.sku or "").strip() in scope]
    dest_items = _list_side(SIDE_DESTINATION, connectors.destination)

    rules = SyncRules.from_connection(connection, capabilities=getattr(connectors.destination, "capabilities", None))
    plan = compute_plan(source_items, dest_items, rules)
    logger.info(
        "plan.built connection=%s source=%s destination=%s plan=%s",
        connection.id, len(source_items), len(dest_items), len(plan),
    )
    return plan


# ---------- 只读预览 ----------
def preview_connection(
    db: Session,
    installation: Installation,
    connection_id: str,
    limit: Optional[int] = None,
    *,
    source_factory: Optional[SourceFactory] = None,
    dest_factory: Optional[DestinationFactory] = None,
) -> dict:
    """不建 job、不写目标店铺；只返回前 limit 条计划。"""
    limit = settings.SYNC_PREVIEW_LIMIT if limit is None else int(limit)
    if limit < 1 or limit > 1000:
        raise ValidationError("limit must be between 1 and 1000")

    conn = connection_service.get_connection(db, installation, connection_id)
    owner = installation_repo.get(db, conn.installation_id)
    if owner is None or not owner.access_token:
        raise NeedsReinstall("source store must be re-installed before previewing")

    connectors = None
    try:
        connectors = open_connectors(owner, conn, source_factory=source_factory, dest_factory=dest_factory)
        plan = build_plan(conn, connectors)
    except SideUnauthorized as e:
        if e.side == SIDE_SOURCE:
            raise NeedsReinstall(str(e.cause) or "source store credential rejected") from e
        raise ValidationError(f"destination credential rejected: {e.cause}") from e
    except ConnectorError as e:
        raise UpstreamUnavailable(f"store request failed: {e}") from e
    finally:
        if connectors is not None:
            connectors.close()

    result = preview_plan(plan, limit)
    result["connection_id"] = conn.id
    return result
