"""Storage adapters for Clinical-ETL.

This module contains the keyed-store adapters that implement the
KeyedStorePort interface: one conditional versioned write per record plus
primary-key and inverse-key reads.
"""

from clinical_etl.adapters.storage.duckdb_adapter import DuckDBKeyedStore
from clinical_etl.adapters.storage.postgresql_adapter import PostgreSQLKeyedStore

__all__ = ["DuckDBKeyedStore", "PostgreSQLKeyedStore"]
