# db 包：engine / session / 建表

from syncbridge.db.base import Base
from syncbridge.db.session import SessionLocal, dispose_engine, engine, get_db
import syncbridge.db.model  # noqa: F401  让 metadata 里有全部表


def create_all() -> None:
    '''本地 sqlite 调试时直接建表；Postgres 一律走 alembic upgrade head'''
    Base.metadata.create_all(bind=engine)
