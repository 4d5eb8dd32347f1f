# autotrader/database/session.py - Database session management with lazy loading
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker

from autotrader.models.base import Base

logger = logging.getLogger(__name__)

FALLBACK_URL = "sqlite:///:memory:"


class DatabaseManager:
    """Owns the SQLAlchemy engine and session factory for one database URL.

    Initialization is lazy. If the configured database cannot be reached the
    manager falls back to an in-memory SQLite database.
    """

    def __init__(self, database_url: str = FALLBACK_URL, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine = None
        self.Session = None
        self._initialized = False
        self._fallback_mode = False

    def _create_engine(self, url: str):
        if url.startswith("sqlite"):
            kwargs = {'connect_args': {'check_same_thread': False}}
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise each checkout sees an empty database
                kwargs['poolclass'] = StaticPool
            return create_engine(url, echo=self.echo, **kwargs)

        return create_engine(
            url,
            echo=self.echo,
            pool_pre_ping=True,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_recycle=3600,
            pool_timeout=30,
        )

    def _setup_database(self):
        """Setup database engine and tables"""
        try:
            self.engine = self._create_engine(self.database_url)
            event.listen(self.engine, 'connect', self._on_connect)
            Base.metadata.create_all(self.engine)
            self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
            self._initialized = True
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.warning(f"Database initialization failed: {e}")
            self._initialize_fallback()

    def _initialize_fallback(self):
        """Use SQLite in-memory when the configured database is unavailable"""
        try:
            logger.info(f"Initializing fallback database: {FALLBACK_URL}")
            self.engine = self._create_engine(FALLBACK_URL)
            Base.metadata.create_all(self.engine)
            self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
            self._initialized = True
            self._fallback_mode = True
            logger.warning("Database initialized in fallback mode (SQLite in-memory)")
        except Exception as e:
            logger.error(f"Fallback database initialization failed: {e}")
            self._initialized = False
            self._fallback_mode = False

    def _on_connect(self, dbapi_connection, connection_record):
        logger.debug("New database connection created")

    def ensure_initialized(self) -> bool:
        """Ensure database is initialized (lazy loading)"""
        if not self._initialized:
            self._setup_database()
        return self._initialized

    @contextmanager
    def get_session(self):
        """Get a database session with automatic commit/rollback"""
        if not self.ensure_initialized():
            raise RuntimeError("Database not available")

        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> dict:
        """Check database connection health"""
        if not self.ensure_initialized():
            return {'status': 'unavailable', 'initialized': False, 'fallback_mode': False}

        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return {
                'status': 'degraded' if self._fallback_mode else 'healthy',
                'initialized': True,
                'fallback_mode': self._fallback_mode,
            }
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                'status': 'unhealthy',
                'initialized': True,
                'fallback_mode': self._fallback_mode,
                'error': str(e),
            }

    def is_fallback_mode(self) -> bool:
        return self._fallback_mode

    def close(self):
        """Close database engine"""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connections closed")
