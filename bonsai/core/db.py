"""Database connection and session management for the persisted state blob."""
import logging
import time
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from bonsai.core.config import settings

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if settings.is_sqlite else {}


def _engine_options() -> dict:
    if settings.is_sqlite:
        options = {"connect_args": connect_args, "echo": False}
        if ":memory:" in settings.database_url:
            # Every session must see the same in-memory database
            options["poolclass"] = StaticPool
        return options
    return {
        "connect_args": connect_args,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,  # Verify connections before using
        "echo": False,
    }


def create_db_engine_with_retry(max_retries: int = None, retry_delay: float = None):
    """
    Create database engine with connection retry logic.

    Args:
        max_retries: Maximum number of connection attempts (default from settings)
        retry_delay: Delay between retries in seconds (default from settings)

    Returns:
        SQLAlchemy engine
    """
    max_retries = max_retries or settings.db_connect_retries
    retry_delay = settings.db_connect_retry_delay if retry_delay is None else retry_delay
    engine = create_engine(settings.database_url, **_engine_options())

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info(f"Database connection successful (attempt {attempt})")
            return engine
        except OperationalError as e:
            if attempt < max_retries:
                logger.warning(
                    f"Database connection failed (attempt {attempt}/{max_retries}): {e}"
                )
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
            else:
                logger.error(f"Database connection failed after {max_retries} attempts: {e}")
                raise

    return engine


# Create engine
engine = create_db_engine_with_retry()

# Session factory handed to the tree store
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def init_db():
    """Create the state table if it does not exist."""
    # Import models so they register on Base.metadata
    import bonsai.models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except OperationalError as e:
        logger.error(f"Failed to initialize database tables: {e}")
        raise
