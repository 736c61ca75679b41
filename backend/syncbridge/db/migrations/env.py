
# Alembic 入口：SyncBridge 的表结构迁移（connections / sync_jobs / telemetry 等）

from __future__ import annotations

import logging
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from syncbridge.core.config import settings
from syncbridge.db.base import Base
import syncbridge.db.model  # noqa: F401  注册全部模型到 Base.metadata


config = context.config
log = logging.getLogger("syncbridge.migrations")

target_metadata = Base.metadata


def _setup_logging() -> None:
    # alembic.ini 缺 [loggers] 段时 fileConfig 会抛 KeyError
    ini = config.config_file_name
    if not ini:
        logging.basicConfig(level=logging.INFO)
        return
    try:
        fileConfig(ini)
    except KeyError:
        logging.basicConfig(level=logging.INFO)
    log.info("migrations.ini path=%s", ini)


def _database_url() -> str:
    # Settings 优先；ini 里的 sqlalchemy.url 只是兜底
    url = settings.DATABASE_URL or config.get_main_option("sqlalchemy.url")
    config.set_main_option("sqlalchemy.url", url)
    return url


def _migrate_offline(url: str) -> None:
    '''只渲染 SQL，不连库'''
    context.configure(url=url, target_metadata=target_metadata, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def _migrate_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as conn:
        context.configure(
            connection=conn,
            target_metadata=target_metadata,
            render_as_batch=conn.dialect.name == "sqlite",
            compare_type=True,            # Numeric(12,2) 价格列精度变化也要检出
            compare_server_default=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    log.info("migrations.online done dialect=%s", engine.dialect.name)


_setup_logging()
_url = _database_url()

if context.is_offline_mode():
    _migrate_offline(_url)
else:
    _migrate_online()
