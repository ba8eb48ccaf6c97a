"""DuckDB Keyed Store Adapter.

This adapter implements the KeyedStorePort contract on DuckDB, an in-process
database. It is the default store for local runs and tests (``:memory:``).

Security Impact:
    - Every write is tenant-scoped through the composite primary key
    - The idempotency-key condition and version increment run in one transaction
    - Connection paths are validated before use

Architecture:
    - Implements KeyedStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - One cursor (DuckDB connection duplicate) per call, so calls from worker
      threads never share transaction state
    - Concurrent writers to the same row are serialized by DuckDB's
      optimistic concurrency control; the loser gets a conflict error
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

import duckdb

from clinical_etl.domain.models import EntityKeys, PersistedRecord
from clinical_etl.domain.ports import (
    ConditionalWriteConflict,
    KeyedStorePort,
    Result,
    StoreError,
    UpsertOutcome,
    UpsertRequest,
)
from clinical_etl.infrastructure.config_manager import StoreConfig

logger = logging.getLogger(__name__)

TABLE_NAME = "entity_records"

_COLUMNS = (
    "pk, sk, gsi1pk, gsi1sk, tenant_id, entity_type, entity_id, "
    "attributes, version, updated_at, idempotency_key"
)


class DuckDBKeyedStore(KeyedStorePort):
    """DuckDB implementation of KeyedStorePort.

    Parameters:
        db_config: StoreConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        store = DuckDBKeyedStore(db_path=":memory:")
        store.initialize_schema()
        outcome = store.conditional_upsert(request)
        record = store.get("t1", "observation", "p1:718-7:2025-09-30T10:00:00Z")
        ```
    """

    def __init__(self, db_config: Optional[StoreConfig] = None, db_path: Optional[str] = None):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StoreError(
                    f"StoreConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        if self.db_path != ":memory:" and not Path(self.db_path).parent.exists():
            raise StoreError(
                f"Database directory does not exist: {Path(self.db_path).parent}",
                operation="__init__"
            )

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connection_lock = threading.Lock()
        self._initialized = False

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        with self._connection_lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path)
                    logger.info(f"Connected to DuckDB database: {self.db_path}")
                except duckdb.Error as e:
                    raise StoreError(
                        f"Failed to connect to DuckDB: {str(e)}",
                        operation="connect",
                        details={"db_path": self.db_path}
                    ) from e
            return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        connection = self._get_connection()
        with self._connection_lock:
            return connection.cursor()

    def initialize_schema(self) -> Result[None]:
        """Create the entity table and its inverse-key index.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            cursor = self._cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        pk VARCHAR NOT NULL,
                        sk VARCHAR NOT NULL,
                        gsi1pk VARCHAR NOT NULL,
                        gsi1sk VARCHAR NOT NULL,
                        tenant_id VARCHAR NOT NULL,
                        entity_type VARCHAR NOT NULL,
                        entity_id VARCHAR NOT NULL,
                        attributes VARCHAR,
                        version BIGINT NOT NULL,
                        updated_at VARCHAR NOT NULL,
                        idempotency_key VARCHAR,
                        PRIMARY KEY (pk, sk)
                    )
                """)
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_gsi1 ON {TABLE_NAME}(gsi1pk, gsi1sk)"
                )
            finally:
                cursor.close()

            self._initialized = True
            logger.info("Keyed store schema initialized successfully")
            return Result.success_result(None)

        except (duckdb.Error, StoreError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="initialize_schema"),
                error_type="StoreError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StoreError(result.error, operation="initialize_schema")

    def conditional_upsert(self, request: UpsertRequest) -> UpsertOutcome:
        """Apply one conditional versioned write in a single transaction.

        The write is accepted when no record exists or the stored idempotency
        key differs from the incoming one; the version becomes the stored
        version + 1 (1 for a new record).

        Raises:
            ConditionalWriteConflict: duplicate=True for an identical stored key,
                duplicate=False when a concurrent writer won the race
            StoreError: On any other store failure
        """
        self._ensure_schema()
        keys = request.keys
        cursor = self._cursor()
        try:
            cursor.execute("BEGIN TRANSACTION")
            try:
                outcome = self._apply(cursor, request)
                cursor.execute("COMMIT")
            except Exception:
                self._rollback(cursor)
                raise
            return outcome

        except (duckdb.ConstraintException, duckdb.TransactionException) as e:
            logger.info(f"Concurrent write lost for {keys.pk}/{keys.sk}: {str(e)}")
            raise ConditionalWriteConflict(
                f"Concurrent write to {keys.pk}/{keys.sk}",
                source=keys.sk,
                duplicate=False,
                details={"pk": keys.pk, "sk": keys.sk},
            ) from e
        except duckdb.Error as e:
            raise StoreError(
                f"Failed to write record: {str(e)}",
                operation="conditional_upsert",
                details={"pk": keys.pk, "sk": keys.sk},
            ) from e
        finally:
            cursor.close()

    def _apply(self, cursor: duckdb.DuckDBPyConnection, request: UpsertRequest) -> UpsertOutcome:
        keys = request.keys
        existing = cursor.execute(
            f"SELECT version, idempotency_key FROM {TABLE_NAME} WHERE pk = ? AND sk = ?",
            [keys.pk, keys.sk],
        ).fetchone()
        attributes = json.dumps(request.attributes, separators=(',', ':'), default=str)

        if existing is None:
            cursor.execute(
                f"INSERT INTO {TABLE_NAME} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)",
                [
                    keys.pk, keys.sk, keys.gsi1pk, keys.gsi1sk,
                    request.tenant_id, request.entity_type, request.entity_id,
                    attributes, request.updated_at, request.idempotency_key,
                ],
            )
            return UpsertOutcome(version=1, created=True)

        current_version, stored_key = existing
        if stored_key is not None and stored_key == request.idempotency_key:
            raise ConditionalWriteConflict(
                f"Idempotency key already applied to {keys.pk}/{keys.sk}",
                source=keys.sk,
                duplicate=True,
                current_version=int(current_version),
                details={"pk": keys.pk, "sk": keys.sk, "idempotency_key": request.idempotency_key},
            )

        row = cursor.execute(
            f"""
            UPDATE {TABLE_NAME}
            SET attributes = ?, tenant_id = ?, updated_at = ?, idempotency_key = ?, version = version + 1
            WHERE pk = ? AND sk = ? AND version = ?
            RETURNING version
            """,
            [
                attributes, request.tenant_id, request.updated_at, request.idempotency_key,
                keys.pk, keys.sk, current_version,
            ],
        ).fetchone()
        if row is None:
            raise ConditionalWriteConflict(
                f"Concurrent write to {keys.pk}/{keys.sk}",
                source=keys.sk,
                duplicate=False,
                details={"pk": keys.pk, "sk": keys.sk},
            )
        return UpsertOutcome(version=int(row[0]), created=False)

    @staticmethod
    def _rollback(cursor: duckdb.DuckDBPyConnection) -> None:
        try:
            cursor.execute("ROLLBACK")
        except duckdb.Error as e:
            # a failed COMMIT already ended the transaction
            logger.debug(f"Rollback skipped: {str(e)}")

    def get(self, tenant_id: str, entity_type: str, entity_id: str) -> Optional[PersistedRecord]:
        self._ensure_schema()
        keys = EntityKeys.for_entity(tenant_id, entity_type, entity_id)
        rows = self._query(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE pk = ? AND sk = ?", [keys.pk, keys.sk], operation="get"
        )
        return self._row_to_record(rows[0]) if rows else None

    def list_by_entity(self, entity_type: str, entity_id: str) -> list[PersistedRecord]:
        self._ensure_schema()
        rows = self._query(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE gsi1pk = ? ORDER BY gsi1sk",
            [f"ENTITY#{entity_type}#{entity_id}"],
            operation="list_by_entity",
        )
        return [self._row_to_record(row) for row in rows]

    def _query(self, statement: str, params: list[Any], operation: str) -> list[tuple]:
        cursor = self._cursor()
        try:
            return cursor.execute(statement, params).fetchall()
        except duckdb.Error as e:
            raise StoreError(f"Failed to query records: {str(e)}", operation=operation) from e
        finally:
            cursor.close()

    @staticmethod
    def _row_to_record(row: tuple) -> PersistedRecord:
        (pk, sk, gsi1pk, gsi1sk, tenant_id, entity_type, entity_id,
         attributes, version, updated_at, idempotency_key) = row
        return PersistedRecord(
            pk=pk, sk=sk, gsi1pk=gsi1pk, gsi1sk=gsi1sk,
            tenant_id=tenant_id, entity_type=entity_type, entity_id=entity_id,
            attributes=json.loads(attributes) if attributes else {},
            version=int(version), updated_at=updated_at, idempotency_key=idempotency_key,
        )

    def close(self) -> None:
        """Close storage connection and release resources."""
        with self._connection_lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB connection")
                except duckdb.Error as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
