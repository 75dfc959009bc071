"""
Relational store connection via SQLAlchemy with psycopg3.

PostgreSQL is the single source of truth for the indexer. SQLite URLs are
accepted for tests and local experiments.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import JSON, create_engine, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# SQLAlchemy base for model declarations
Base = declarative_base()

# JSON payload column: JSONB on PostgreSQL, JSON elsewhere. Python None is SQL NULL.
JsonDocument = JSON(none_as_null=True).with_variant(
    postgresql.JSONB(none_as_null=True), "postgresql"
)


class Database:
    """
    Owns the engine and session factory for one store.

    Constructed once at process start and handed to every service that
    needs the store.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        engine_kwargs: Optional[Dict[str, Any]] = None,
    ):
        self.url = url
        kwargs: Dict[str, Any] = dict(engine_kwargs or {})
        if url.startswith("postgresql://"):
            # Use psycopg3 dialect
            url = url.replace("postgresql://", "postgresql+psycopg://")
        if not url.startswith("sqlite"):
            kwargs.setdefault("pool_pre_ping", True)  # Verify connections before use
            kwargs.setdefault("pool_recycle", 300)  # Recycle connections every 5 minutes
        self.engine: Engine = create_engine(url, echo=echo, **kwargs)

        if self.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self.engine)

        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Unit of work: commit on success, rollback on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        """Round-trip a trivial query; raises on connectivity problems."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def create_all(self) -> None:
        """Create tables (for development/testing; production uses Alembic)."""
        # Import models so they register with Base.metadata
        from medledger import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def insert_for(session: Session, model):
    """
    Dialect-specific INSERT supporting on_conflict_do_nothing/do_update.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect}")


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """pysqlite needs explicit BEGIN for SAVEPOINT to behave."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
