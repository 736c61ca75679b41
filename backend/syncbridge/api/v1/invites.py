# 零售商邀请 -> 前端 invites 页面调用
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from syncbridge.db.model.installation import Installation
from syncbridge.db.session import get_db
from syncbridge.services import invite_service
from syncbridge.services.auth_service import get_current_shop


router = APIRouter(prefix="/invites", tags=["invites"])


class InviteCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    dest_shop_domain: str = Field(..., description="retailer shop, e.g. acme or acme.myshopify.com")
    email: Optional[str] = None


@router.get("")
def list_invites(current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    return [invite_service.to_summary(i) for i in invite_service.list_invites(db, current)]


@router.post("", status_code=status.HTTP_201_CREATED)
def create_invite(body: InviteCreate, current: Installation = Depends(get_current_shop), db: Session = Depends(get_db)):
    invite = invite_service.create_invite(db, current, body.name, body.dest_shop_domain, body.email)
    return invite_service.to_summary(invite)
