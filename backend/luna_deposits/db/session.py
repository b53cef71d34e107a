"""
Database Session Management

SQLAlchemy engine and session factory for SQLite (development, tests) or
PostgreSQL (production).
"""

from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from luna_deposits.core.config import get_settings
from luna_deposits.core.logging_config import get_logger

logger = get_logger()


def create_db_engine(database_url: str) -> Engine:
    """Create engine with settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False
        )
        logger.info(f"Using SQLite database: {database_url}")
        return engine

    engine = create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        echo=False
    )
    logger.info("Using PostgreSQL database")
    return engine


engine = create_db_engine(get_settings().DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """
    Dependency for FastAPI endpoints

    Usage:
        @router.get("/deposits/{intent_id}")
        def get_deposit(intent_id: str, db: Session = Depends(get_db)):
            return PaymentIntentStore(db).get(intent_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Create all tables from models

    Production schemas are managed by Alembic; this is for development
    and first start against an empty SQLite file.
    """
    from luna_deposits.db.models import Base

    logger.info("Creating database tables", extra={"database_url": str(engine.url)})
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def drop_db():
    """
    Drop all tables (tests only)
    """
    from luna_deposits.db.models import Base

    logger.warning("Dropping all database tables")
    Base.metadata.drop_all(bind=engine)
    logger.info("All database tables dropped")


__all__ = ["engine", "SessionLocal", "get_db", "init_db", "drop_db", "create_db_engine"]
