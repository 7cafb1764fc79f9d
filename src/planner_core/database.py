"""Database connection and session management."""
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from .config import get_settings

settings = get_settings()


def make_engine(url: str, echo: bool = False, **engine_kwargs) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections get foreign key enforcement switched on so that
    ON DELETE CASCADE behaves the same as on PostgreSQL.
    """
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            **engine_kwargs,
        )

        @event.listens_for(engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,          # Verify connections before using
        pool_size=3,
        max_overflow=7,
        pool_recycle=3600,
        pool_timeout=30,
        **engine_kwargs,
    )


engine = make_engine(settings.database_url, echo=settings.database_echo)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
