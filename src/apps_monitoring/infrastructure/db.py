from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from apps_monitoring.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    password = f":{s.db_password}" if s.db_password else ""
    return f"postgresql+psycopg2://{s.db_user}{password}@{s.db_host}:{s.db_port}/{s.db_name}"


def _connect_args(dsn: str) -> dict:
    """Driver-level bounds on connecting and on each statement."""
    s = get_settings()
    if dsn.startswith("postgresql"):
        return {
            "connect_timeout": s.db_connect_timeout_seconds,
            "options": f"-c statement_timeout={int(s.db_statement_timeout_seconds * 1000)}",
        }
    if dsn.startswith("sqlite"):
        return {"timeout": s.db_statement_timeout_seconds}
    return {}


engine = create_engine(_dsn(), pool_pre_ping=True, connect_args=_connect_args(_dsn()))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def upsert_insert(session: Session, table):
    """Dialect-specific INSERT supporting ON CONFLICT for the session's bind."""
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"unsupported dialect for upserts: {name}")
