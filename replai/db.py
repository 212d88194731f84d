# replai/db.py  (SYNC ONLY)

import logging
import os
from typing import Generator

from sqlalchemy import create_engine, event, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from replai.config import get_settings

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """
    Normaliza DATABASE_URL para el driver sync:
    - vacío                       -> sqlite:///./data/replai.db
    - postgres://... (heroku)     -> postgresql+psycopg2://...
    - sqlite+aiosqlite://...      -> sqlite://...
    - postgresql+asyncpg://...    -> postgresql+psycopg2://...
    """
    url = (url or "").strip()

    if not url:
        return "sqlite:///./data/replai.db"

    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)

    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)

    if url.startswith("postgresql+asyncpg://"):
        return url.replace("postgresql+asyncpg://", "postgresql+psycopg2://", 1)

    return url


def make_engine(url: str, **engine_kwargs) -> Engine:
    url = normalize_database_url(url)

    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        # ✅ sqlite no crea la carpeta ./data por sí solo
        path = make_url(url).database
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    engine = create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        future=True,
        **engine_kwargs,
    )

    if url.startswith("sqlite"):
        _sqlite_transactions(engine)
    return engine


def _sqlite_transactions(engine: Engine) -> None:
    """
    pysqlite no emite BEGIN hasta el primer DML, lo que rompe los SAVEPOINT
    (begin_nested). Se desactiva su gestión y se emite BEGIN explícito.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = make_engine(get_settings().database_url)
logger.info("[db] url=%s", engine.url.render_as_string(hide_password=True))

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    future=True,
)

Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    # registra los modelos en Base.metadata antes de crear tablas
    from replai import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
