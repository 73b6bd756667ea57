"""Database connection and session management."""

import time
from typing import Dict, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
import structlog

from orchestrator.models import Base

logger = structlog.get_logger()


def build_engine(database_url: str) -> Engine:
    """Create a database engine for the given URL."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory every store is constructed with."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine):
    """Create all database tables."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error("Failed to create database tables", error=str(e))
        raise


def probe(session_factory: sessionmaker) -> Dict[str, Union[bool, float]]:
    """Run a trivial read and report whether it worked and how long it took."""
    start = time.perf_counter()
    db: Session = session_factory()
    try:
        db.execute(text("SELECT 1"))
        return {"ok": True, "response_time_ms": (time.perf_counter() - start) * 1000}
    except Exception as e:
        logger.error("Database probe failed", error=str(e))
        return {"ok": False, "response_time_ms": (time.perf_counter() - start) * 1000}
    finally:
        db.close()
