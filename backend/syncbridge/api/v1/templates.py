# connection 模板 -> 前端“批量开店”页面调用
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from syncbridge.db.model.installation import Installation
from syncbridge.db.session import get_db
from syncbridge.services import connection_service, template_service
from syncbridge.services.auth_service import get_current_shop


router = APIRouter(prefix="/templates", tags=["templates"])


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    platform: Literal["shopify", "woocommerce"]
    config: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None


class TemplateFromConnection(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class TemplateInstantiate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    secret: str = Field(..., description="dest_access_token (shopify) / consumer_secret (woocommerce)")
    overrides: Dict[str, Any] = Field(default_factory=dict)


@router.get("")
def list_templates(current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    return [template_service.to_summary(t) for t in template_service.list_templates(db, current)]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_template(body: TemplateCreate, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    tpl = template_service.create_template(
        db, current, name=body.name, platform=body.platform, config=body.config, description=body.description
    )
    return template_service.to_summary(tpl)


@router.post("/from-connection/{connection_id}", status_code=status.HTTP_201_CREATED)
def create_from_connection(
    connection_id: str,
    body: TemplateFromConnection,
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    tpl = template_service.create_template_from_connection(db, current, connection_id, body.name, body.description)
    return template_service.to_summary(tpl)


@router.delete("/{template_id}")
def delete_template(template_id: str, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    template_service.delete_template(db, current, template_id)
    return {"ok": True, "id": template_id}


@router.post("/{template_id}/instantiate", status_code=status.HTTP_201_CREATED)
def instantiate(
    template_id: str,
    body: TemplateInstantiate,
    current: Installation = Depends(get_current_shop),
    db: Session = Depends(get_db),
):
    conn = template_service.instantiate_template(db, current, template_id, body.name, body.secret, body.overrides)
    return connection_service.to_summary(conn)
