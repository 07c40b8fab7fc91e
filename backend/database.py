"""
SQLite database setup for playlists, program guides and sync jobs.
"""
import logging
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

# Database file location
DB_FILE = CONFIG_DIR / "playlists.db"

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def get_database_url() -> str:
    """Get the SQLite database URL."""
    return f"sqlite:///{DB_FILE}"


def init_db() -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        # Ensure config directory exists
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Config directory ensured: {CONFIG_DIR}")

        database_url = get_database_url()
        logger.info(f"Initializing database at {DB_FILE}")

        _engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,  # Set to True for SQL debugging
        )

        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import Playlist, Category, Channel, EpgFile, EpgGroup, ChannelLineup, SyncJob, ImportJob  # noqa: F401

        Base.metadata.create_all(bind=_engine)
        logger.debug("Database tables created/verified")

        # Add columns introduced after a database was first created
        _run_migrations(_engine)

        logger.info("Database initialized successfully")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


# (table, column, DDL type) added after the initial schema
_ADDED_COLUMNS = [
    ("channels", "tv_archive", "VARCHAR(10)"),
    ("epg_files", "programme_count", "INTEGER DEFAULT 0 NOT NULL"),
    ("sync_jobs", "category_filters", "TEXT"),
    ("import_jobs", "source_playlist_id", "INTEGER"),
]


def _run_migrations(engine) -> None:
    """Run database migrations to add new columns to existing tables."""
    from sqlalchemy import text

    logger.debug("Checking for database migrations")
    try:
        with engine.connect() as conn:
            for table, column, ddl in _ADDED_COLUMNS:
                result = conn.execute(text(f"PRAGMA table_info({table})"))
                columns = [row[1] for row in result.fetchall()]
                if columns and column not in columns:
                    logger.info(f"Adding {column} column to {table}")
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                    conn.commit()
                    logger.info(f"Migration complete: added {table}.{column}")
            logger.debug("All migrations complete - schema is up to date")
    except Exception as e:
        logger.exception(f"Migration failed: {e}")
        raise


def get_session():
    """Get a database session. Use as context manager or close manually."""
    if _SessionLocal is None:
        logger.error("Attempted to get database session before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def get_engine():
    """Get the database engine."""
    if _engine is None:
        logger.error("Attempted to get database engine before initialization")
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine
