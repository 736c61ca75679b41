# 定时全量同步配置接口 -> 前端设置页面调用
from typing import List, Literal

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from syncbridge.db.session import get_db
from syncbridge.orchestration.scheduler_tick import SCHEDULE_KEY, default_schedule
from syncbridge.repository.scheduler_repo import ScheduleUpsertDTO, get_or_default, upsert

router = APIRouter(prefix="/schedules", tags=["schedules"])

# 目前只有一条规则
ScheduleKey = Literal["connection_full_sync"]


class ScheduleItem(BaseModel):
    key: ScheduleKey
    enabled: bool
    hours: List[int]
    window_minutes: int
    timezone: str
    last_run_at: str | None = None
    updated_at: str | None = None


class ScheduleUpsert(BaseModel):
    enabled: bool
    hours: List[int] = Field(..., min_length=1)
    window_minutes: int = Field(5, ge=1, le=59)
    timezone: str = "UTC"


@router.get("", response_model=List[ScheduleItem])
def list_schedules(db: Session = Depends(get_db)) -> List[ScheduleItem]:
    """
    返回定时任务配置；表中还没有时用内置默认值（不写库）。
    """
    return [_to_item(get_or_default(db, SCHEDULE_KEY, default_schedule()))]


@router.get("/{key}", response_model=ScheduleItem)
def get_schedule(key: ScheduleKey = Path(..., description="connection_full_sync"), db: Session = Depends(get_db)) -> ScheduleItem:
    return _to_item(get_or_default(db, key, default_schedule()))


@router.put("/{key}", response_model=ScheduleItem)
def upsert_schedule(
    key: ScheduleKey = Path(..., description="connection_full_sync"),
    body: ScheduleUpsert = ...,
    db: Session = Depends(get_db),
) -> ScheduleItem:
    try:
        row = upsert(
            db,
            key,
            ScheduleUpsertDTO(
                enabled=body.enabled,
                hours=",".join(str(h) for h in body.hours),
                window_minutes=body.window_minutes,
                timezone=body.timezone,
            ),
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return _to_item(row)


def _to_item(row) -> ScheduleItem:
    return ScheduleItem(
        key=row.key,  # type: ignore[arg-type]
        enabled=row.enabled,
        hours=row.hour_list,
        window_minutes=row.window_minutes,
        timezone=row.timezone,
        last_run_at=row.last_run_at.isoformat() if row.last_run_at else None,
        updated_at=row.updated_at.isoformat() if getattr(row, "updated_at", None) else None,
    )
