"""Database configuration and session management."""
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Database URL from environment; defaults to a process-local SQLite database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite://")


def build_engine(database_url: str = DATABASE_URL):
    """Create an engine with pool settings suited to the backend."""
    engine_kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        engine_kwargs.update(
            {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        )
    else:
        engine_kwargs["pool_pre_ping"] = True
    return create_engine(database_url, **engine_kwargs)


engine = build_engine()

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()


def create_tables(bind=None):
    """Create all database tables."""
    # Import models so they register with the metadata
    from . import db_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind=None):
    """Drop all database tables."""
    Base.metadata.drop_all(bind=bind or engine)
