"""
PMS Inventory Database Configuration
SQLAlchemy engine, session factory and declarative base
"""
from sqlalchemy import create_engine, MetaData, text
from sqlalchemy.orm import declarative_base, sessionmaker
import logging

from .config import settings

logger = logging.getLogger(__name__)


def _engine_options() -> dict:
    """Engine keyword arguments for the configured backend"""
    if settings.is_sqlite:
        return {
            "connect_args": {"check_same_thread": False},
            "echo": settings.DEBUG,
        }
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_pre_ping": True,  # Validate connections before use
        "echo": settings.DEBUG,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options())

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Metadata with naming convention for constraints
metadata = MetaData(naming_convention={
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
})

# Create base class for models
Base = declarative_base(metadata=metadata)


def init_db(bind=None):
    """
    Initialize database tables

    This function creates all tables defined in models
    """
    try:
        # Import all models to ensure they are registered with Base
        from pms_inventory import models  # noqa: F401

        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise


def check_db_connection() -> bool:
    """
    Check if database connection is working

    Returns:
        True if connection is successful, False otherwise
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
