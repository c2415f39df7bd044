"""Relational store manager for task state, artifacts and resolved objects."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from docgraph.storage.models import Artifact, Base, ResolvedObject, TaskProcess
from docgraph.utils.config import DatabaseConfig

logger = logging.getLogger(__name__)


class ExtractionStore:
    """Manager for the relational extraction store.

    Handles engine creation, schema creation and session scoping. Engines and
    services receive the ``Session`` yielded by :meth:`session`.

    Attributes:
        database_url: SQLAlchemy database URL
        echo: Whether SQL statements are logged
        engine: SQLAlchemy engine instance
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize the store with configuration.

        Args:
            config: Database configuration
        """
        self.database_url = config.database_url
        self.echo = config.echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    def connect(self) -> None:
        """Create the engine and session factory.

        Raises:
            SQLAlchemyError: If the engine cannot be created
        """
        engine_kwargs: Dict[str, Any] = {"echo": self.echo}
        is_sqlite = self.database_url.startswith("sqlite")
        in_memory = is_sqlite and (
            ":memory:" in self.database_url or self.database_url == "sqlite://"
        )
        if in_memory:
            # One shared connection so every session sees the same in-memory database.
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        elif not is_sqlite:
            engine_kwargs["pool_pre_ping"] = True

        try:
            self.engine = create_engine(self.database_url, **engine_kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create engine for {self.database_url}: {e}")
            raise

        if is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_case_sensitive_like)

        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=True, expire_on_commit=False
        )
        logger.info(f"Connected extraction store at {self.database_url}")

    def close(self) -> None:
        """Dispose of the engine and its connection pool."""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            self._session_factory = None
            logger.info("Closed extraction store")

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        if self.engine is None:
            raise RuntimeError("Not connected to the extraction store. Call connect() first.")
        Base.metadata.create_all(bind=self.engine)
        logger.info("Ensured extraction store schema")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for a unit of work.

        Commits on success and rolls back on error.

        Yields:
            SQLAlchemy session

        Raises:
            RuntimeError: If not connected to the store
        """
        if self._session_factory is None:
            raise RuntimeError("Not connected to the extraction store. Call connect() first.")

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def _enable_sqlite_case_sensitive_like(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA case_sensitive_like = ON")
    cursor.close()


# -----------------------
# Metadata helpers
# -----------------------
def merge_meta(record: Any, updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Read-modify-write ``record.meta`` by assigning a fresh dict.

    Assigning a new dict is what marks the JSON column dirty for the ORM.
    """
    meta = dict(record.meta or {})
    meta.update(updates)
    record.meta = meta
    return meta


# -----------------------
# Source-of-truth reads
# -----------------------
def live_children(session: Session, artifact_id: int) -> List[Artifact]:
    """Children of an artifact, re-read from the database.

    ``populate_existing`` refreshes any instances already held in the identity map,
    so classification written by another unit of work is always visible.
    """
    stmt = (
        select(Artifact)
        .where(Artifact.parent_artifact_id == artifact_id)
        .order_by(Artifact.position, Artifact.id)
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(stmt))


def run_processes(
    session: Session, task_run_id: int, operation: Optional[str] = None
) -> List[TaskProcess]:
    """Processes of a run (optionally one operation), re-read from the database."""
    stmt = select(TaskProcess).where(TaskProcess.task_run_id == task_run_id)
    if operation is not None:
        stmt = stmt.where(TaskProcess.operation == operation)
    stmt = stmt.order_by(TaskProcess.id).execution_options(populate_existing=True)
    return list(session.scalars(stmt))


def get_object(session: Session, object_id: Any) -> Optional[ResolvedObject]:
    try:
        return session.get(ResolvedObject, int(object_id))
    except (TypeError, ValueError):
        return None
