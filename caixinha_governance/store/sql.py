"""
SQL Record Store — SQLAlchemy implementation of the RecordStore contract.

Conditional writes are single ``UPDATE ... WHERE revision = :expected``
statements, so the database arbitrates between concurrent writers and the
loser sees ``rowcount == 0``. Create-only writes rely on the primary key to
reject a second insert.

Driver or connectivity failures (including pool and connect timeouts) are
surfaced as ServiceError; callers never see SQLAlchemy exceptions.

Usage:
    store = SqlRecordStore(settings.database_url_sync)
    store.initialize()  # Create the records table
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine, delete, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from caixinha_governance.errors import RevisionConflictError, ServiceError
from caixinha_governance.store.base import Predicate, Record, RecordStore
from caixinha_governance.store.models import Base, RecordDB

logger = logging.getLogger(__name__)


class SqlRecordStore(RecordStore):
    """Record store backed by a single SQL table."""

    def __init__(self, database_url: str, timeout_seconds: float = 5.0) -> None:
        """
        Initialize the SQL store.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
            timeout_seconds: Upper bound for acquiring a connection.
        """
        self.engine = create_engine(database_url, echo=False, **self._engine_options(database_url, timeout_seconds))
        self.SessionLocal = sessionmaker(bind=self.engine)

    @staticmethod
    def _engine_options(database_url: str, timeout_seconds: float) -> dict[str, Any]:
        if database_url.startswith("sqlite"):
            options: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": timeout_seconds}}
            if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
                options["poolclass"] = StaticPool
            return options
        return {
            "pool_pre_ping": True,
            "pool_timeout": timeout_seconds,
            "connect_args": {"connect_timeout": max(1, int(timeout_seconds))},
        }

    def initialize(self) -> None:
        """Create the records table if it does not exist."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise ServiceError("Could not initialize record store") from exc
        logger.info("Record store schema ready: %s", self.engine.url.render_as_string(hide_password=True))

    def get(self, collection: str, record_id: str, consistent: bool = False) -> Record | None:
        try:
            with self.SessionLocal() as session:
                row = session.get(RecordDB, (collection, record_id))
                return self._to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Store read failed: %s/%s: %s", collection, record_id, exc)
            raise ServiceError("Record store unavailable") from exc

    def put(
        self,
        collection: str,
        record_id: str,
        data: dict[str, Any],
        expected_revision: int | None = None,
    ) -> Record:
        try:
            with self.SessionLocal() as session:
                if expected_revision is None:
                    row = session.get(RecordDB, (collection, record_id))
                    if row is None:
                        revision = 1
                        session.add(RecordDB(collection=collection, record_id=record_id, revision=1, data=data))
                    else:
                        revision = row.revision + 1
                        row.revision = revision
                        row.data = data
                elif expected_revision == 0:
                    revision = 1
                    session.add(RecordDB(collection=collection, record_id=record_id, revision=1, data=data))
                    session.flush()
                else:
                    revision = expected_revision + 1
                    result = session.execute(
                        update(RecordDB)
                        .where(
                            RecordDB.collection == collection,
                            RecordDB.record_id == record_id,
                            RecordDB.revision == expected_revision,
                        )
                        .values(data=data, revision=revision)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        current = session.get(RecordDB, (collection, record_id))
                        raise RevisionConflictError(
                            collection, record_id, expected_revision,
                            current.revision if current is not None else None,
                        )
                session.commit()
                return Record(collection=collection, id=record_id, revision=revision, data=dict(data))
        except IntegrityError as exc:
            raise RevisionConflictError(collection, record_id, expected_revision, None) from exc
        except SQLAlchemyError as exc:
            logger.error("Store write failed: %s/%s: %s", collection, record_id, exc)
            raise ServiceError("Record store unavailable") from exc

    def delete(self, collection: str, record_id: str, expected_revision: int | None = None) -> bool:
        try:
            with self.SessionLocal() as session:
                stmt = delete(RecordDB).where(
                    RecordDB.collection == collection,
                    RecordDB.record_id == record_id,
                )
                if expected_revision is not None:
                    stmt = stmt.where(RecordDB.revision == expected_revision)
                result = session.execute(stmt)
                if result.rowcount == 0 and expected_revision is not None:
                    session.rollback()
                    current = session.get(RecordDB, (collection, record_id))
                    if current is not None or expected_revision:
                        raise RevisionConflictError(
                            collection, record_id, expected_revision,
                            current.revision if current is not None else None,
                        )
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            logger.error("Store delete failed: %s/%s: %s", collection, record_id, exc)
            raise ServiceError("Record store unavailable") from exc

    def query(self, collection: str, predicate: Predicate | None = None) -> list[Record]:
        try:
            with self.SessionLocal() as session:
                rows = session.execute(
                    select(RecordDB)
                    .where(RecordDB.collection == collection)
                    .order_by(RecordDB.record_id)
                ).scalars().all()
                records = [self._to_record(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error("Store query failed: %s: %s", collection, exc)
            raise ServiceError("Record store unavailable") from exc
        return [r for r in records if predicate is None or predicate(r.data)]

    def ping(self) -> bool:
        try:
            with self.SessionLocal() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning("Record store ping failed: %s", exc)
            return False

    @staticmethod
    def _to_record(row: RecordDB) -> Record:
        return Record(
            collection=row.collection,
            id=row.record_id,
            revision=row.revision,
            data=dict(row.data),
        )
