# connection 管理 + 同步控制 + 进度/健康 -> 前端 connections 页面调用
from __future__ import annotations

import csv, io
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.responses import StreamingResponse

from syncbridge.db.model.installation import Installation
from syncbridge.db.model.sync_job import JOB_FULL_SYNC, TRIGGER_MANUAL
from syncbridge.db.session import get_db
from syncbridge.orchestration.connection_sync import job_scheduler
from syncbridge.orchestration.connection_sync.planner import preview_connection
from syncbridge.services import connection_service, installation_service, telemetry_service
from syncbridge.services.auth_service import get_current_shop
from syncbridge.services.telemetry_service import EXPORT_COLUMNS


router = APIRouter(prefix="/connections", tags=["connections"])


class ConnectionRules(BaseModel):
    sync_price: Optional[bool] = None
    sync_categories: Optional[bool] = None
    sync_tags: Optional[bool] = None
    sync_collections: Optional[bool] = None
    create_missing: Optional[bool] = None
    publish_new: Optional[bool] = None


class ConnectionCreate(ConnectionRules):
    name: str = Field(..., min_length=1, max_length=255)
    platform: Literal["shopify", "woocommerce"]
    # shopify
    dest_shop_domain: Optional[str] = None
    dest_access_token: Optional[str] = None
    # woocommerce
    base_url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None

    dest_location_id: Optional[str] = None
    mapping_rules: Optional[Dict[str, Any]] = None


class ConnectionUpdate(ConnectionRules):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    dest_shop_domain: Optional[str] = None
    dest_access_token: Optional[str] = None      # 空 = 不修改
    base_url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None        # 空 = 不修改
    dest_location_id: Optional[str] = None
    mapping_rules: Optional[Dict[str, Any]] = None


def _job_out(job) -> Dict[str, Any]:
    return {"job_id": job.id, "connection_id": job.connection_id, "job_type": job.job_type, "state": job.state}


# ---------- CRUD ----------
@router.get("")
def list_connections(current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    return {
        "installation": asdict(installation_service.get_installation_status(db, current.shop_domain)),
        "connections": connection_service.list_connection_summaries(db, current),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_connection(body: ConnectionCreate, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    data = body.model_dump(exclude_none=True)
    conn = connection_service.create_connection(db, current, data)
    return connection_service.to_summary(conn)


@router.get("/{connection_id}")
def get_connection(connection_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    return connection_service.get_connection_summary(db, current, connection_id)


@router.patch("/{connection_id}")
def update_connection(
    connection_id: str,
    body: ConnectionUpdate,
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection_service.update_connection(db, current, connection_id, body.model_dump(exclude_unset=True))
    return connection_service.get_connection_summary(db, current, connection_id)


@router.delete("/{connection_id}")
def delete_connection(
    connection_id: str,
    cancel_running: bool = Query(False, description="cancel the running job and delete once it stops"),
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection_service.get_connection(db, current, connection_id)
    result = job_scheduler.delete_connection(db, connection_id, cancel_running=cancel_running)
    code = status.HTTP_202_ACCEPTED if result.pending else status.HTTP_200_OK
    return JSONResponse(status_code=code, content={"id": connection_id, **asdict(result)})


# ---------- 同步控制 ----------
@router.post("/{connection_id}/sync", status_code=status.HTTP_202_ACCEPTED)
def start_sync(
    connection_id: str,
    job_type: Literal["full_sync", "preview"] = Query(JOB_FULL_SYNC),
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection_service.get_connection(db, current, connection_id)
    job = job_scheduler.enqueue(db, connection_id, job_type, TRIGGER_MANUAL)
    return _job_out(job)


@router.post("/{connection_id}/pause")
def pause(connection_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    connection_service.get_connection(db, current, connection_id)
    return {"id": connection_id, "status": job_scheduler.pause(db, connection_id)}


@router.post("/{connection_id}/resume")
def resume(connection_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    connection_service.get_connection(db, current, connection_id)
    return {"id": connection_id, "status": job_scheduler.resume(db, connection_id)}


# ---------- 进度 / 历史 / 健康 ----------
@router.get("/{connection_id}/progress")
def progress(connection_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    connection_service.get_connection(db, current, connection_id)
    return telemetry_service.get_progress(db, connection_id)


@router.get("/{connection_id}/history")
def history(
    connection_id: str,
    limit: int = Query(10, ge=1, le=500),
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection_service.get_connection(db, current, connection_id)
    return {"connection_id": connection_id, "jobs": telemetry_service.get_history(db, connection_id, limit)}


@router.get("/{connection_id}/errors")
def errors(
    connection_id: str,
    window_hours: int = Query(24, ge=1, le=24 * 90),
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    connection_service.get_connection(db, current, connection_id)
    return telemetry_service.get_error_summary(db, connection_id, window_hours)


@router.get("/{connection_id}/preview")
def preview(
    connection_id: str,
    limit: int = Query(50, ge=1, le=1000),
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    return preview_connection(db, current, connection_id, limit)


'''
日志导出（CSV）
   - 列：Timestamp, Level, SKU, Message；最多 LOG_EXPORT_LIMIT 行，新的在前
'''
@router.get("/{connection_id}/logs/export")
def export_logs(connection_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    connection_service.get_connection(db, current, connection_id)
    rows = telemetry_service.export_logs(db, connection_id)

    def _iter():
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(EXPORT_COLUMNS)
        yield buf.getvalue()
        for row in rows:
            buf.seek(0); buf.truncate(0)
            writer.writerow(row)
            yield buf.getvalue()

    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    filename = f"sync_logs_{connection_id}_{ts}.csv"
    return StreamingResponse(
        _iter(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
