"""Database engine and connection management using SQLModel."""

import logging

from sqlalchemy.engine import URL
from sqlmodel import Session, create_engine

from config import config
from utils.job_errors import ConfigurationError

logger = logging.getLogger(__name__)

# Module-level engine instance
_engine = None


def _connection_string():
    if config.database_url:
        logger.info("[db.connection] Using DATABASE_URL")
        return config.database_url

    if not config.db_host or not config.db_user:
        raise ConfigurationError("Missing DATABASE_URL or DB_HOST/DB_USER")

    # Cloud SQL Unix socket: postgresql+psycopg2://user:password@/database?host=/cloudsql/name
    if config.db_host.startswith("/cloudsql/"):
        logger.info(f"[db.connection] Using Cloud SQL Unix socket: {config.db_host}")
        return (
            f"postgresql+psycopg2://{config.db_user}:{config.db_password}"
            f"@/{config.db_name}?host={config.db_host}"
        )

    logger.info(f"[db.connection] Using TCP connection: {config.db_host}:{config.db_port}")
    return URL.create(
        "postgresql+psycopg2",
        username=config.db_user,
        password=config.db_password,
        host=config.db_host,
        port=config.db_port,
        database=config.db_name,
    )


def get_engine():
    """
    Get or create the database engine with connection pooling.

    The pool is sized for one poll cycle's worth of concurrent jobs plus the
    poller's own claim/record sessions.

    Returns:
        Engine: SQLModel database engine instance
    """
    global _engine

    if _engine is None:
        _engine = create_engine(
            _connection_string(),
            pool_size=config.worker_batch_size + 2,
            max_overflow=10,
            pool_pre_ping=True,  # Verify connections before using
            echo=False,
        )

    return _engine


def get_session() -> Session:
    """
    Create a new database session.

    Example:
        with get_session() as session:
            version = session.get(SheetVersion, sheet_version_id)
    """
    return Session(get_engine())


def close_engine():
    """Close the database engine and all connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
