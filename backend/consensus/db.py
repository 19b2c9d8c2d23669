from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./consensus.db"
# Seconds a SQLite writer waits on another lobby's open transaction.
SQLITE_BUSY_TIMEOUT = 30


def normalize_database_url(url: str) -> str:
    """Route bare postgres URLs through the psycopg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://") and "+psycopg" not in url:
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)

if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
else:
    connect_args = {}

engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False)
Base = declarative_base()
