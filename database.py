"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the DeliveryBay delivery backend.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine tuned for the target backend"""
    if database_url.startswith("sqlite"):
        # SQLite: allow use across worker threads and wait on writer locks
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=7,           # Base pool for short request-scoped units of work
        max_overflow=15,       # Burst capacity when couriers race for orders
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for a connection during bursts
        echo=echo,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "deliverybay",
        },
    )

def build_session_factory(bind: Engine) -> sessionmaker:
    """Session factory; objects stay readable after commit for response building"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )

engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)
SessionLocal = build_session_factory(engine)

def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


@contextmanager
def managed_session(session_factory: Optional[sessionmaker] = None):
    """Sync context manager for database sessions"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
