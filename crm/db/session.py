# crm/db/session.py
from flask import current_app
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm.logger import get_logger

logger = get_logger(__name__)


def create_db_engine(db_url: str) -> Engine:
    if not db_url:
        raise RuntimeError("DATABASE_URL not set")
    logger.info("Using database URL: %s", db_url.split("@")[-1])

    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    # 内存数据库必须共享同一个连接，否则每个 session 都看到一个空库
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(db_url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def get_session() -> Session:
    """Open a new ORM session bound to the current app's engine. Caller closes it."""
    return current_app.extensions["db_session_factory"]()
