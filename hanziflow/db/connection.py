import logging
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, Optional, Type
from urllib.parse import quote_plus

from sqlalchemy import MetaData, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from hanziflow.config.hanziflow_config import HanziflowConfig

# Configure logging
logger = logging.getLogger(__name__)

metadata = MetaData()
Base = declarative_base(metadata=metadata)


def get_base() -> Type:
    """
    Get the base class for declarative models

    Returns:
        Base class for declarative models
    """
    return Base


class Database:
    """
    Database connection manager for hanziflow

    Handles both SQLite and PostgreSQL connections with proper configuration
    and connection pooling. The same database backs the job store, the card
    store, the dictionary and the distributed rate limiter.
    """

    def __init__(self, config: Optional[HanziflowConfig] = None, url: Optional[str] = None):
        """
        Initialize database connection

        Args:
            config: HanziflowConfig instance. If None, the global configuration is used.
            url: Explicit SQLAlchemy URL; overrides the database section of the config.
                 ``sqlite://`` gives a single shared in-memory database.
        """
        self.config = config or HanziflowConfig()
        self.engine = None
        self.Session = None
        self._initialize(url)

    def _build_url(self) -> str:
        db_config = self.config.get('database', {})
        db_type = db_config.get('type', 'sqlite')

        if db_type == 'sqlite':
            sqlite_config = db_config.get('sqlite', {})
            db_path = Path(sqlite_config.get('path', db_config.get('path', 'hanziflow.db')))
            db_path.parent.mkdir(parents=True, exist_ok=True)
            return f'sqlite:///{db_path}'

        postgres_config = db_config.get('postgres', db_config.get('postgresql', {}))
        host = postgres_config.get('host', 'localhost')
        port = postgres_config.get('port', 5432)
        database = postgres_config.get('database', 'hanziflow')
        user = quote_plus(postgres_config.get('user', 'postgres'))
        password = quote_plus(postgres_config.get('password', '') or '')
        sslmode = postgres_config.get('sslmode', 'prefer')
        return f'postgresql://{user}:{password}@{host}:{port}/{database}?sslmode={sslmode}'

    def _initialize(self, url: Optional[str] = None) -> None:
        """Initialize database connection and session factory"""
        max_retries = 3
        retry_delay = 1  # seconds
        url = url or self._build_url()

        for attempt in range(max_retries):
            try:
                if url == 'sqlite://' or url == 'sqlite:///:memory:':
                    # One connection shared by every session, so all see the same data
                    self.engine = create_engine(
                        'sqlite://',
                        poolclass=StaticPool,
                        connect_args={'check_same_thread': False}
                    )
                elif url.startswith('sqlite'):
                    self.engine = create_engine(
                        url,
                        poolclass=QueuePool,
                        pool_size=5,
                        max_overflow=10,
                        pool_timeout=30,
                        pool_recycle=1800,
                        connect_args={
                            'timeout': 30,
                            'check_same_thread': False
                        }
                    )
                else:
                    self.engine = create_engine(
                        url,
                        poolclass=QueuePool,
                        pool_size=5,
                        max_overflow=10,
                        pool_timeout=30,
                        pool_recycle=1800,
                        pool_pre_ping=True
                    )

                if self.engine.dialect.name == 'sqlite':
                    @event.listens_for(self.engine, "connect")
                    def set_sqlite_pragma(dbapi_connection, connection_record):
                        cursor = dbapi_connection.cursor()
                        cursor.execute("PRAGMA foreign_keys=ON")
                        cursor.close()

                # Test connection
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

                self.Session = sessionmaker(
                    bind=self.engine,
                    expire_on_commit=False,
                    autocommit=False,
                    autoflush=False
                )
                return

            except SQLAlchemyError as e:
                if attempt < max_retries - 1:
                    logger.warning(
                        f"Database connection attempt {attempt + 1} failed: {str(e)}. "
                        f"Retrying in {retry_delay} seconds..."
                    )
                    time.sleep(retry_delay)
                    retry_delay *= 2
                else:
                    raise RuntimeError(f"Failed to connect to database after {max_retries} attempts: {str(e)}")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def session(self) -> Session:
        """
        Get a database session

        Returns:
            SQLAlchemy session (usable as a context manager)
        """
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Commits on success, rolls back and re-raises on error.

        Yields:
            SQLAlchemy session
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """Round-trip a trivial query; raises if the database is unreachable"""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def server_time(self, session: Optional[Session] = None) -> datetime:
        """
        Current time according to the database server, as naive UTC.

        Processes sharing the database agree on this clock even when their
        local clocks drift.
        """
        if self.dialect == 'sqlite':
            query = text("SELECT strftime('%Y-%m-%d %H:%M:%f', 'now')")
        elif self.dialect == 'postgresql':
            query = text("SELECT clock_timestamp() AT TIME ZONE 'UTC'")
        else:
            query = text("SELECT CURRENT_TIMESTAMP")

        if session is not None:
            value = session.execute(query).scalar()
        else:
            with self.engine.connect() as conn:
                value = conn.execute(query).scalar()

        if isinstance(value, str):
            return datetime.strptime(value, '%Y-%m-%d %H:%M:%S.%f')
        return value.replace(tzinfo=None)

    def create_tables(self) -> None:
        """Create all tables defined in the metadata"""
        # Register models on the metadata before creating
        from hanziflow.db import models  # noqa: F401
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error(f"Failed to create database tables: {str(e)}")
            raise

    def drop_tables(self) -> None:
        """Drop all tables defined in the metadata"""
        Base.metadata.drop_all(self.engine)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'dialect': self.dialect,
            'url': self.engine.url.render_as_string(hide_password=True)
        }

    def dispose(self) -> None:
        """Close all database connections"""
        if self.engine:
            self.engine.dispose()
            self.engine = None
