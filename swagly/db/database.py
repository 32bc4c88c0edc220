"""
Database connection and session management
"""
import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Explicitly owned storage handle.

    Opened once at process start (FastAPI lifespan or worker boot) and
    disposed at shutdown. Components receive sessions from it instead of
    reaching for a module-level engine.
    """

    def __init__(self, url: str, pool_size: int = 10, max_overflow: int = 20):
        self.url = url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    def open(self) -> "Database":
        if self._engine is not None:
            return self

        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self.url or self.url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs = {
                "pool_pre_ping": True,
                "pool_size": self.pool_size,
                "max_overflow": self.max_overflow,
            }

        self._engine = create_engine(self.url, **kwargs)
        self._sessionmaker = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self._engine
        )
        logger.info(f"Database opened ({self._engine.dialect.name})")
        return self

    def create_all(self) -> None:
        """Create tables for all registered models"""
        from swagly.db import models  # noqa: F401  (registers models on Base)
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        return self._sessionmaker()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database connections closed")
        self._engine = None
        self._sessionmaker = None
