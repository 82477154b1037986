"""Engine and sessions for the order sync service.

WHAT:
    One SQLAlchemy engine per process and the `SessionLocal` factory that
    the registry, dedup index, materializer and routers share.

WHY:
    - Worker code is async but SQLAlchemy here is sync: each order
      transaction runs in `asyncio.to_thread` on its own Session
    - Routers get a request-scoped session through `get_db`

USAGE:
    from ordersync.database import SessionLocal, get_db

    db = SessionLocal()
    try:
        db.query(Order).count()
    finally:
        db.close()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - ordersync/services/order_materializer.py (transaction owner)
"""

import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ordersync.utils.env import load_env_file


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        load_env_file()
        url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is missing; export it or put it in backend/.env.")
    return url


def _build_engine(url: str) -> Engine:
    """Create the engine, sizing the pool for worker concurrency.

    3 concurrent jobs x 5 order transactions per batch fan-out, plus API
    requests, fit in pool_size + max_overflow.
    """
    if url.startswith("sqlite"):
        # Sessions cross threads via asyncio.to_thread
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


DATABASE_URL = _database_url()
engine = _build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
