from __future__ import annotations

import os
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./monkey_tracker.db"
POOL_OPTIONS = ("pool_size", "max_overflow", "pool_timeout", "pool_recycle")

Base = declarative_base()


def get_database_url(raw_url: str | None = None) -> str:
    raw_url = raw_url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+psycopg://", 1)
    if raw_url.startswith("postgresql://") and "+" not in raw_url.split("://", 1)[0]:
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def build_engine(url: str, echo: bool = False, **pool: Any) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False}, pool_pre_ping=True)
    options = {key: value for key, value in pool.items() if key in POOL_OPTIONS and value is not None}
    return create_engine(url, echo=echo, pool_pre_ping=True, **options)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
