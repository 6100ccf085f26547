from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import AppConfig, get_config


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite's implicit BEGIN is disabled so every transaction can start as
    # BEGIN IMMEDIATE: writers queue on the busy timeout instead of failing on a
    # shared-to-reserved lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(config: AppConfig | None = None, sqlite_path: str | None = None) -> Engine:
    config = config or get_config()
    database_url = config.database_url
    if database_url and not sqlite_path:
        if database_url.startswith("sqlite"):
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                future=True,
            )
            _install_sqlite_hooks(engine)
            return engine
        return create_engine(database_url, future=True, pool_pre_ping=True)

    local_path = sqlite_path or config.sqlite_path

    engine = create_engine(
        f"sqlite:///{local_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    _install_sqlite_hooks(engine)
    return engine


def make_session_local(engine: Engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False)
