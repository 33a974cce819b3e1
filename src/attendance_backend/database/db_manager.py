"""
Database Manager for RFID Class Attendance
===========================================
Handles database connection, initialization, and session management.

Features:
- SQLite by default, any SQLAlchemy URL via DATABASE_URL
- Automatic table creation
- Default configuration seeding
- Change feed attached to every session
"""

import os
import logging
from pathlib import Path
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base, SystemConfig, Student, Lecturer, Course, AttendanceLog, DEFAULT_CONFIG, utc_now
from .change_feed import ChangeFeed

# Configure logging
logger = logging.getLogger(__name__)

# Database file path (same directory as this module)
DATABASE_DIR = Path(__file__).parent
DATABASE_PATH = DATABASE_DIR / "attendance.db"


class DatabaseManager:
    """
    Manages database connections and provides session context.

    Usage:
        db = DatabaseManager()
        with db.get_session() as session:
            student = session.query(Student).filter_by(rfid_tag="AB12CD").first()
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        database_url: Optional[str] = None,
        echo: bool = False
    ):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file. Defaults to attendance.db
            database_url: Full SQLAlchemy URL; overrides db_path when given
            echo: If True, log all SQL statements (useful for debugging)
        """
        self.db_path = Path(db_path) if db_path else DATABASE_PATH
        self.database_url = database_url or f"sqlite:///{self.db_path}"
        self.echo = echo
        self.engine = None
        self.SessionLocal = None
        self.change_feed = ChangeFeed()
        self._initialized = False

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def initialize(self) -> bool:
        """
        Initialize database connection and create tables.

        Returns:
            True if initialization successful, False otherwise
        """
        try:
            engine_kwargs = {"echo": self.echo}

            if self.is_sqlite:
                # check_same_thread=False: route handlers run on a threadpool
                engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
                if ":memory:" in self.database_url or self.database_url == "sqlite://":
                    engine_kwargs["poolclass"] = StaticPool
                else:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self.engine = create_engine(self.database_url, **engine_kwargs)

            if self.is_sqlite:
                # Enable foreign key support (SQLite has it disabled by default)
                @event.listens_for(self.engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.execute("PRAGMA journal_mode=WAL")  # Better concurrent access
                    cursor.close()

            # Create session factory
            self.SessionLocal = sessionmaker(
                autocommit=False,
                autoflush=False,
                bind=self.engine
            )
            self.change_feed.attach(self.SessionLocal)

            # Create all tables
            Base.metadata.create_all(bind=self.engine)
            logger.info(f"Database initialized at: {self.database_url}")

            self._initialized = True

            # Seed default configuration
            self._seed_default_config()
            return True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            self._initialized = False
            return False

    def _seed_default_config(self):
        """Insert default configuration values if not present."""
        with self.get_session() as session:
            for key, (value, description) in DEFAULT_CONFIG.items():
                existing = session.query(SystemConfig).filter_by(key=key).first()
                if not existing:
                    session.add(SystemConfig(key=key, value=value, description=description))
                    logger.debug(f"Added default config: {key}={value}")
            session.commit()
            logger.info("Default configuration seeded")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup.

        Usage:
            with db.get_session() as session:
                # do database operations
                session.commit()

        Yields:
            SQLAlchemy Session object
        """
        if not self._initialized:
            self.initialize()

        session = self.SessionLocal()
        try:
            yield session
        except IntegrityError:
            # Constraint outcomes are classified by the caller
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_config(self, key: str, default: str = None) -> Optional[str]:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value as string
        """
        with self.get_session() as session:
            config = session.query(SystemConfig).filter_by(key=key).first()
            return config.value if config else default

    def get_config_int(self, key: str, default: int = 0) -> int:
        """Get config value as integer."""
        value = self.get_config(key)
        try:
            return int(value) if value else default
        except ValueError:
            return default

    def get_config_bool(self, key: str, default: bool = False) -> bool:
        """Get config value as boolean."""
        value = self.get_config(key)
        if value is None:
            return default
        return value.lower() in ('true', '1', 'yes', 'on')

    def set_config(self, key: str, value: str, description: str = None):
        """
        Set a configuration value.

        Args:
            key: Configuration key name
            value: Configuration value
            description: Optional description
        """
        with self.get_session() as session:
            config = session.query(SystemConfig).filter_by(key=key).first()
            if config:
                config.value = value
                config.updated_at = utc_now()
                if description:
                    config.description = description
            else:
                session.add(SystemConfig(key=key, value=value, description=description))
            session.commit()
            logger.info(f"Config updated: {key}={value}")

    def get_stats(self) -> dict:
        """
        Get database statistics.

        Returns:
            Dictionary with counts and status info
        """
        with self.get_session() as session:
            today_start = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)

            return {
                "database_url": self.database_url,
                "total_students": session.query(Student).count(),
                "total_lecturers": session.query(Lecturer).count(),
                "total_courses": session.query(Course).count(),
                "total_logs": session.query(AttendanceLog).count(),
                "logs_today": session.query(AttendanceLog).filter(
                    AttendanceLog.timestamp >= today_start
                ).count(),
                "initialized": self._initialized
            }

    def close(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connection closed")


# Global singleton instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """
    Get the global database manager instance.
    Creates and initializes if not already done.

    Returns:
        DatabaseManager singleton instance
    """
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url=os.environ.get("DATABASE_URL"))
        _db_manager.initialize()

    return _db_manager


def reset_db_manager():
    """Reset the global database manager (for testing)."""
    global _db_manager
    if _db_manager:
        _db_manager.close()
    _db_manager = None
