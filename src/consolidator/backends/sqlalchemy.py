"""
SQLAlchemy implementation of the structured target store.

Stores every entity type in one table keyed by (entity_type, id), with the
record body as JSON text. Works with any SQLAlchemy async dialect; SQLite
through aiosqlite is the embedded default.

Table layout:
    entity_records(
        entity_type TEXT NOT NULL,
        id          TEXT NOT NULL,
        data        TEXT NOT NULL,   -- JSON object, keys sorted
        created_at  TEXT NOT NULL,   -- ISO 8601 (UTC)
        updated_at  TEXT NOT NULL,   -- ISO 8601 (UTC)
        PRIMARY KEY (entity_type, id)
    )

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> engine = create_async_engine("sqlite+aiosqlite:///app.db")
    >>> target = SQLAlchemyRecordStore(engine)
    >>> await target.initialize()
    >>> await target.create("clients", {"id": "c1", "display_name": "Acme"})
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from consolidator.backends._connection import connection_scope
from consolidator.backends.interface import BulkWriteOutcome, record_id_of
from consolidator.exceptions import (
    BackendError,
    CorruptPayloadError,
    DuplicateKeyError,
    ErrorCategory,
    PermanentBackendError,
    RecordNotFoundError,
    TransientBackendError,
    classify_exception,
)
from consolidator.models import EntityRecord
from consolidator.observability import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLAlchemyRecordStore:
    """
    StorageBackend over a SQL database through SQLAlchemy async.

    Driver exceptions are translated into the engine's taxonomy: unique
    constraint violations become DuplicateKeyError, lock and connectivity
    problems TransientBackendError, everything else PermanentBackendError.

    Attributes:
        _conn: Engine or connection used for all statements.
        _table: Name of the records table.
    """

    def __init__(
        self,
        conn: AsyncEngine | AsyncConnection,
        *,
        table_name: str = "entity_records",
        name: str = "target",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the SQLAlchemy store.

        Args:
            conn: AsyncEngine (each call runs in its own transaction) or an
                AsyncConnection managed by the caller.
            table_name: Name of the records table.
            name: Backend name used in logs and reports.
            tracer: Optional tracer (if not provided, one will be created).
            enable_tracing: Whether to enable OpenTelemetry tracing (default True).
        """
        if not _IDENTIFIER.match(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._conn = conn
        self._table = table_name
        self._name = name
        dialect = conn.dialect if isinstance(conn, AsyncEngine) else conn.engine.dialect
        self._db_system = dialect.name

    @property
    def name(self) -> str:
        return self._name

    async def initialize(self) -> None:
        """Create the records table if it does not exist."""
        with self._translate_errors("*"):
            async with connection_scope(self._conn, self._name) as conn:
                await conn.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS {self._table} (
                            entity_type VARCHAR(100) NOT NULL,
                            id VARCHAR(255) NOT NULL,
                            data TEXT NOT NULL,
                            created_at VARCHAR(40) NOT NULL,
                            updated_at VARCHAR(40) NOT NULL,
                            PRIMARY KEY (entity_type, id)
                        )
                        """
                    )
                )
        logger.debug("Ensured table %s exists", self._table)

    async def get_all(self, entity_type: str) -> list[EntityRecord]:
        with self._tracer.span(
            "consolidator.sql_store.get_all",
            self._attrs(entity_type, "SELECT"),
        ):
            with self._translate_errors(entity_type):
                async with connection_scope(self._conn, self._name, write=False) as conn:
                    result = await conn.execute(
                        text(
                            f"SELECT data FROM {self._table} "  # nosec B608 - validated identifier
                            "WHERE entity_type = :entity_type ORDER BY created_at, id"
                        ),
                        {"entity_type": entity_type},
                    )
                    rows = result.fetchall()
            return [self._decode(entity_type, row[0]) for row in rows]

    async def get_by_id(self, entity_type: str, record_id: str) -> EntityRecord | None:
        with self._tracer.span(
            "consolidator.sql_store.get_by_id",
            {**self._attrs(entity_type, "SELECT"), ATTR_RECORD_ID: record_id},
        ):
            with self._translate_errors(entity_type, record_id):
                async with connection_scope(self._conn, self._name, write=False) as conn:
                    row = await self._fetch_data(conn, entity_type, record_id)
            return self._decode(entity_type, row) if row is not None else None

    async def create(self, entity_type: str, record: EntityRecord) -> EntityRecord:
        record_id = record_id_of(record)
        with self._tracer.span(
            "consolidator.sql_store.create",
            {**self._attrs(entity_type, "INSERT"), ATTR_RECORD_ID: record_id or ""},
        ):
            if record_id is None:
                raise PermanentBackendError("Record has no id", entity_type=entity_type)
            stored = {**record, "id": record_id}
            now = datetime.now(UTC).isoformat()
            with self._translate_errors(entity_type, record_id, duplicate_on_integrity=True):
                async with connection_scope(self._conn, self._name) as conn:
                    await conn.execute(
                        text(
                            f"INSERT INTO {self._table} "  # nosec B608 - validated identifier
                            "(entity_type, id, data, created_at, updated_at) "
                            "VALUES (:entity_type, :id, :data, :created_at, :updated_at)"
                        ),
                        {
                            "entity_type": entity_type,
                            "id": record_id,
                            "data": self._encode(stored),
                            "created_at": now,
                            "updated_at": now,
                        },
                    )
            return self._decode(entity_type, self._encode(stored))

    async def update(
        self,
        entity_type: str,
        record_id: str,
        partial: EntityRecord,
    ) -> EntityRecord:
        with self._tracer.span(
            "consolidator.sql_store.update",
            {**self._attrs(entity_type, "UPDATE"), ATTR_RECORD_ID: record_id},
        ):
            with self._translate_errors(entity_type, record_id):
                async with connection_scope(self._conn, self._name) as conn:
                    current = await self._fetch_data(conn, entity_type, record_id)
                    if current is None:
                        raise RecordNotFoundError(entity_type, record_id)
                    merged = {**self._decode(entity_type, current), **partial, "id": record_id}
                    await conn.execute(
                        text(
                            f"UPDATE {self._table} "  # nosec B608 - validated identifier
                            "SET data = :data, updated_at = :updated_at "
                            "WHERE entity_type = :entity_type AND id = :id"
                        ),
                        {
                            "entity_type": entity_type,
                            "id": record_id,
                            "data": self._encode(merged),
                            "updated_at": datetime.now(UTC).isoformat(),
                        },
                    )
            return self._decode(entity_type, self._encode(merged))

    async def delete(self, entity_type: str, record_id: str) -> None:
        with self._tracer.span(
            "consolidator.sql_store.delete",
            {**self._attrs(entity_type, "DELETE"), ATTR_RECORD_ID: record_id},
        ):
            with self._translate_errors(entity_type, record_id):
                async with connection_scope(self._conn, self._name) as conn:
                    result = await conn.execute(
                        text(
                            f"DELETE FROM {self._table} "  # nosec B608 - validated identifier
                            "WHERE entity_type = :entity_type AND id = :id"
                        ),
                        {"entity_type": entity_type, "id": record_id},
                    )
                    if result.rowcount == 0:
                        raise RecordNotFoundError(entity_type, record_id)

    async def bulk_create(
        self,
        entity_type: str,
        records: list[EntityRecord],
    ) -> list[BulkWriteOutcome]:
        """
        Insert records one statement each, so failures stay per-record.

        Each insert runs in its own transaction when an engine was given;
        with a caller-managed connection the caller decides what to commit.
        """
        with self._tracer.span(
            "consolidator.sql_store.bulk_create",
            {**self._attrs(entity_type, "INSERT"), ATTR_BATCH_SIZE: len(records)},
        ):
            outcomes: list[BulkWriteOutcome] = []
            for index, record in enumerate(records):
                try:
                    stored = await self.create(entity_type, record)
                except BackendError as e:
                    outcomes.append(BulkWriteOutcome.failed(index, record, e))
                else:
                    outcomes.append(BulkWriteOutcome.created(index, stored))
            return outcomes

    async def count(self, entity_type: str) -> int:
        with self._translate_errors(entity_type):
            async with connection_scope(self._conn, self._name, write=False) as conn:
                result = await conn.execute(
                    text(
                        f"SELECT COUNT(*) FROM {self._table} "  # nosec B608 - validated identifier
                        "WHERE entity_type = :entity_type"
                    ),
                    {"entity_type": entity_type},
                )
                return int(result.scalar_one())

    async def entity_types(self) -> list[str]:
        with self._translate_errors("*"):
            async with connection_scope(self._conn, self._name, write=False) as conn:
                result = await conn.execute(
                    text(
                        f"SELECT DISTINCT entity_type FROM {self._table} "  # nosec B608
                        "ORDER BY entity_type"
                    )
                )
                return [row[0] for row in result.fetchall()]

    async def clear(self, entity_type: str) -> None:
        with self._translate_errors(entity_type):
            async with connection_scope(self._conn, self._name) as conn:
                await conn.execute(
                    text(
                        f"DELETE FROM {self._table} "  # nosec B608 - validated identifier
                        "WHERE entity_type = :entity_type"
                    ),
                    {"entity_type": entity_type},
                )

    async def clear_all(self) -> None:
        with self._translate_errors("*"):
            async with connection_scope(self._conn, self._name) as conn:
                await conn.execute(text(f"DELETE FROM {self._table}"))  # nosec B608

    async def replace_all(self, entity_type: str, records: list[EntityRecord]) -> None:
        """Delete and re-insert an entity type's rows in one transaction."""
        rows = []
        now = datetime.now(UTC).isoformat()
        for record in records:
            record_id = record_id_of(record)
            if record_id is None:
                raise PermanentBackendError("Record has no id", entity_type=entity_type)
            rows.append(
                {
                    "entity_type": entity_type,
                    "id": record_id,
                    "data": self._encode({**record, "id": record_id}),
                    "created_at": now,
                    "updated_at": now,
                }
            )
        with self._translate_errors(entity_type):
            async with connection_scope(self._conn, self._name) as conn:
                await conn.execute(
                    text(
                        f"DELETE FROM {self._table} "  # nosec B608 - validated identifier
                        "WHERE entity_type = :entity_type"
                    ),
                    {"entity_type": entity_type},
                )
                if rows:
                    await conn.execute(
                        text(
                            f"INSERT INTO {self._table} "  # nosec B608 - validated identifier
                            "(entity_type, id, data, created_at, updated_at) "
                            "VALUES (:entity_type, :id, :data, :created_at, :updated_at)"
                        ),
                        rows,
                    )

    async def _fetch_data(
        self,
        conn: AsyncConnection,
        entity_type: str,
        record_id: str,
    ) -> str | None:
        result = await conn.execute(
            text(
                f"SELECT data FROM {self._table} "  # nosec B608 - validated identifier
                "WHERE entity_type = :entity_type AND id = :id"
            ),
            {"entity_type": entity_type, "id": record_id},
        )
        row = result.fetchone()
        return row[0] if row is not None else None

    @contextmanager
    def _translate_errors(
        self,
        entity_type: str,
        record_id: str | None = None,
        *,
        duplicate_on_integrity: bool = False,
    ) -> Generator[None, None, None]:
        """Map driver exceptions onto the backend error taxonomy."""
        try:
            yield
        except IntegrityError as e:
            if duplicate_on_integrity and record_id is not None:
                raise DuplicateKeyError(entity_type, record_id) from e
            raise PermanentBackendError(
                f"Constraint violation: {e.orig}", entity_type=entity_type, record_id=record_id
            ) from e
        except SQLAlchemyError as e:
            if classify_exception(e) == ErrorCategory.TRANSIENT:
                raise TransientBackendError(
                    f"{self._db_system} busy: {e}", entity_type=entity_type, record_id=record_id
                ) from e
            raise PermanentBackendError(
                f"{self._db_system} error: {e}", entity_type=entity_type, record_id=record_id
            ) from e

    def _attrs(self, entity_type: str, operation: str) -> dict[str, str]:
        return {
            ATTR_ENTITY_TYPE: entity_type,
            ATTR_DB_SYSTEM: self._db_system,
            ATTR_DB_OPERATION: operation,
        }

    @staticmethod
    def _encode(record: EntityRecord) -> str:
        return json.dumps(record, sort_keys=True, default=str)

    @staticmethod
    def _decode(entity_type: str, data: str) -> EntityRecord:
        try:
            record = json.loads(data)
        except json.JSONDecodeError as e:
            raise CorruptPayloadError(entity_type, f"invalid JSON in data column: {e}") from e
        if not isinstance(record, dict):
            raise CorruptPayloadError(entity_type, "data column does not hold a JSON object")
        return record

    def __repr__(self) -> str:
        return f"SQLAlchemyRecordStore(name={self._name!r}, table={self._table!r})"


__all__ = ["SQLAlchemyRecordStore"]
