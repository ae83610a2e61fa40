from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from shipyard.core.config import get_settings
from shipyard.core.layout import AppLayout, resolve_database_url


def build_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@lru_cache
def _default_session_factory() -> sessionmaker:
    settings = get_settings()
    url = resolve_database_url(settings, AppLayout.from_settings(settings))
    return create_session_factory(build_engine(url))


def SessionLocal():
    return _default_session_factory()()


def get_db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
