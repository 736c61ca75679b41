# 统一的 ORM 基类 + 命名规范 + 可移植列类型

from __future__ import annotations
import uuid

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import MetaData

#  统一命名规范，Alembic 迁移时约束/索引名字稳定可预期
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


# 生产 PostgreSQL 用 JSONB，测试 SQLite 退化为 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


# 所有表模型（Installation, Connection, SyncJob …）都要继承这个 Base 才能被 ORM 识别
class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)
