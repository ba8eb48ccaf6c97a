"""PostgreSQL Keyed Store Adapter.

This adapter implements the KeyedStorePort contract on PostgreSQL for
deployments where several pipeline processes share one store.

Security Impact:
    - Connection credentials are managed via StoreConfig and never logged
    - SSL connections supported for secure network communication
    - Every write is tenant-scoped through the composite primary key

Architecture:
    - Implements KeyedStorePort (Hexagonal Architecture)
    - Connection pooling (psycopg2 ThreadedConnectionPool) for worker threads
    - The conditional write is a single ``INSERT ... ON CONFLICT DO UPDATE ...
      WHERE`` statement, so condition check and version increment are atomic
"""

import logging
import threading
from typing import Any, Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extras import Json

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

_UPSERT_SQL = f"""
    INSERT INTO {TABLE_NAME} ({_COLUMNS})
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 1, %s, %s)
    ON CONFLICT (pk, sk) DO UPDATE SET
        attributes = EXCLUDED.attributes,
        tenant_id = EXCLUDED.tenant_id,
        updated_at = EXCLUDED.updated_at,
        idempotency_key = EXCLUDED.idempotency_key,
        version = {TABLE_NAME}.version + 1
    WHERE {TABLE_NAME}.idempotency_key IS DISTINCT FROM EXCLUDED.idempotency_key
    RETURNING version
"""


class PostgreSQLKeyedStore(KeyedStorePort):
    """PostgreSQL implementation of KeyedStorePort.

    Parameters:
        db_config: StoreConfig from configuration manager (preferred)
        connection_string: Full PostgreSQL connection string
        pool_size: Connection pool size
        max_overflow: Maximum connection pool overflow

    Example Usage:
        ```python
        from clinical_etl.infrastructure.config_manager import get_store_config

        store = PostgreSQLKeyedStore(db_config=get_store_config())
        result = store.initialize_schema()
        if result.is_success():
            outcome = store.conditional_upsert(request)
        ```
    """

    def __init__(
        self,
        db_config: Optional[StoreConfig] = None,
        connection_string: Optional[str] = None,
        pool_size: int = 5,
        max_overflow: int = 10
    ):
        self._connection_pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()
        self._initialized = False

        if db_config:
            if db_config.db_type != "postgresql":
                raise StoreError(
                    f"StoreConfig type '{db_config.db_type}' does not match PostgreSQL adapter",
                    operation="__init__"
                )
            if db_config.connection_string:
                self.connection_params = {"dsn": db_config.connection_string.get_secret_value()}
            elif all([db_config.host, db_config.database]):
                self.connection_params = {
                    "host": db_config.host,
                    "port": db_config.port or 5432,
                    "database": db_config.database,
                    "user": db_config.username,
                    "sslmode": db_config.ssl_mode or "prefer",
                }
                if db_config.password:
                    self.connection_params["password"] = db_config.password.get_secret_value()
            else:
                raise StoreError("PostgreSQL StoreConfig requires host and database", operation="__init__")
            self.pool_size = db_config.pool_size
            self.max_overflow = db_config.max_overflow
        elif connection_string:
            self.connection_params = {"dsn": connection_string}
            self.pool_size = pool_size
            self.max_overflow = max_overflow
        else:
            raise StoreError(
                "PostgreSQL adapter requires either db_config or connection_string",
                operation="__init__"
            )

    def _get_connection_pool(self) -> pool.ThreadedConnectionPool:
        with self._pool_lock:
            if self._connection_pool is None:
                try:
                    self._connection_pool = pool.ThreadedConnectionPool(
                        minconn=1,
                        maxconn=self.pool_size + self.max_overflow,
                        **self.connection_params
                    )
                    logger.info("Created PostgreSQL connection pool")
                except psycopg2.Error as e:
                    raise StoreError(
                        f"Failed to create PostgreSQL connection pool: {str(e)}",
                        operation="connect",
                        details={"host": self.connection_params.get("host", "N/A")}
                    ) from e
            return self._connection_pool

    def _get_connection(self):
        try:
            return self._get_connection_pool().getconn()
        except pool.PoolError as e:
            raise StoreError(f"Failed to get connection from pool: {str(e)}", operation="get_connection") from e

    def _return_connection(self, conn) -> None:
        try:
            self._get_connection_pool().putconn(conn)
        except pool.PoolError as e:
            logger.warning(f"Error returning connection to pool: {str(e)}")

    def initialize_schema(self) -> Result[None]:
        """Create the entity table and its inverse-key index.

        Returns:
            Result[None]: Success or failure result
        """
        conn = None
        try:
            conn = self._get_connection()
            with conn.cursor() as cursor:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                        pk TEXT NOT NULL,
                        sk TEXT NOT NULL,
                        gsi1pk TEXT NOT NULL,
                        gsi1sk TEXT NOT NULL,
                        tenant_id TEXT NOT NULL,
                        entity_type TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        attributes JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                        version BIGINT NOT NULL,
                        updated_at TEXT NOT NULL,
                        idempotency_key TEXT,
                        PRIMARY KEY (pk, sk)
                    )
                """)
                cursor.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_gsi1 ON {TABLE_NAME}(gsi1pk, gsi1sk)"
                )
            conn.commit()
            self._initialized = True
            logger.info("Keyed store schema initialized successfully")
            return Result.success_result(None)

        except (psycopg2.Error, StoreError) as e:
            if conn:
                conn.rollback()
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StoreError(error_msg, operation="initialize_schema"),
                error_type="StoreError"
            )
        finally:
            if conn:
                self._return_connection(conn)

    def _ensure_schema(self) -> None:
        if not self._initialized:
            result = self.initialize_schema()
            if result.is_failure():
                raise StoreError(result.error, operation="initialize_schema")

    def conditional_upsert(self, request: UpsertRequest) -> UpsertOutcome:
        """Apply one conditional versioned write.

        Raises:
            ConditionalWriteConflict: duplicate=True for an identical stored key,
                duplicate=False on a serialization failure
            StoreError: On any other store failure
        """
        self._ensure_schema()
        keys = request.keys
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    _UPSERT_SQL,
                    (
                        keys.pk, keys.sk, keys.gsi1pk, keys.gsi1sk,
                        request.tenant_id, request.entity_type, request.entity_id,
                        Json(request.attributes), request.updated_at, request.idempotency_key,
                    ),
                )
                row = cursor.fetchone()
                if row is None:
                    cursor.execute(
                        f"SELECT version FROM {TABLE_NAME} WHERE pk = %s AND sk = %s",
                        (keys.pk, keys.sk),
                    )
                    current = cursor.fetchone()
            conn.commit()

        except psycopg2.extensions.TransactionRollbackError as e:
            conn.rollback()
            raise ConditionalWriteConflict(
                f"Concurrent write to {keys.pk}/{keys.sk}",
                source=keys.sk,
                duplicate=False,
                details={"pk": keys.pk, "sk": keys.sk},
            ) from e
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(
                f"Failed to write record: {str(e)}",
                operation="conditional_upsert",
                details={"pk": keys.pk, "sk": keys.sk},
            ) from e
        finally:
            self._return_connection(conn)

        if row is None:
            raise ConditionalWriteConflict(
                f"Idempotency key already applied to {keys.pk}/{keys.sk}",
                source=keys.sk,
                duplicate=True,
                current_version=int(current[0]) if current else None,
                details={"pk": keys.pk, "sk": keys.sk, "idempotency_key": request.idempotency_key},
            )
        version = int(row[0])
        return UpsertOutcome(version=version, created=version == 1)

    def get(self, tenant_id: str, entity_type: str, entity_id: str) -> Optional[PersistedRecord]:
        keys = EntityKeys.for_entity(tenant_id, entity_type, entity_id)
        rows = self._query(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE pk = %s AND sk = %s", (keys.pk, keys.sk), "get"
        )
        return self._row_to_record(rows[0]) if rows else None

    def list_by_entity(self, entity_type: str, entity_id: str) -> list[PersistedRecord]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM {TABLE_NAME} WHERE gsi1pk = %s ORDER BY gsi1sk",
            (f"ENTITY#{entity_type}#{entity_id}",),
            "list_by_entity",
        )
        return [self._row_to_record(row) for row in rows]

    def _query(self, statement: str, params: tuple, operation: str) -> list[tuple]:
        self._ensure_schema()
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute(statement, params)
                rows = cursor.fetchall()
            conn.commit()
            return rows
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to query records: {str(e)}", operation=operation) from e
        finally:
            self._return_connection(conn)

    @staticmethod
    def _row_to_record(row: tuple) -> PersistedRecord:
        (pk, sk, gsi1pk, gsi1sk, tenant_id, entity_type, entity_id,
         attributes, version, updated_at, idempotency_key) = row
        # JSONB comes back already decoded
        decoded: Any = attributes or {}
        return PersistedRecord(
            pk=pk, sk=sk, gsi1pk=gsi1pk, gsi1sk=gsi1sk,
            tenant_id=tenant_id, entity_type=entity_type, entity_id=entity_id,
            attributes=decoded, version=int(version), updated_at=updated_at, idempotency_key=idempotency_key,
        )

    def close(self) -> None:
        """Close storage connection pool and release resources."""
        with self._pool_lock:
            if self._connection_pool is not None:
                try:
                    self._connection_pool.closeall()
                    logger.info("Closed PostgreSQL connection pool")
                except pool.PoolError as e:
                    logger.warning(f"Error closing connection pool: {str(e)}")
                finally:
                    self._connection_pool = None
