
# 数据库连接：API 请求、Celery 同步任务、定时 tick 共用同一个 engine

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from syncbridge.core.config import settings


def _pool_options(url: str) -> Dict[str, Any]:
    # sqlite 只在本地/测试用，没有连接池参数；多线程访问要关掉 same-thread 检查
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Postgres：worker 并发跑 job 时连接数会抖，留 overflow
    return dict(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=1800)


engine = create_engine(settings.DATABASE_URL, future=True, **_pool_options(settings.DATABASE_URL))


# 提交后对象不失效：job 执行器 commit 完还要读 job.state / counters
SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=engine,
    class_=Session,
    autoflush=False,
    expire_on_commit=False,
    future=True,
)


def get_db() -> Generator[Session, None, None]:
    '''路由依赖：每个请求一个 session，commit 由 repo/service 自己决定'''
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    # 脚本用；出异常回滚，正常路径由调用方自己 commit
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def dispose_engine() -> None:
    engine.dispose()
