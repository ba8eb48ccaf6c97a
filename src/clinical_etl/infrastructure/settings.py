"""Application Settings and Configuration.

This module provides application-wide settings that combine the store
configuration from the configuration manager with pipeline defaults read
from ``CETL_`` environment variables.

Security Impact:
    - Store credentials are loaded via StoreConfig (SecretStr, never logged)
    - Defaults are provided for development convenience
"""

import os
from enum import Enum
from typing import Optional

from clinical_etl.infrastructure.config_manager import ENV_PREFIX, ConfigManager, StoreConfig

# Application metadata
APP_NAME = "Clinical-ETL"
APP_VERSION = "1.0.0"

# Batch delivery (mirrors the event-source mapping of the deployed pipeline)
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_BUDGET_SECONDS = 30.0
DEFAULT_AUDIT_TIMEOUT_SECONDS = 2.0
DEFAULT_MAX_RECEIVE_COUNT = 5
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 60.0

DEFAULT_BLOB_ROOT = ".clinical_etl/blobs"
DEFAULT_RAW_BUCKET = "raw"
DEFAULT_CSV_SOURCE = "csv:labx"
DEFAULT_HL7_SOURCE = "hl7v2:file"


class ReplayPolicy(str, Enum):
    """What the persistence engine does with an exact re-delivery.

    NOOP: succeed without writing; version unchanged; confirmation re-emitted.
    REJECT: raise ConditionalWriteConflict so the item is retried/dead-lettered.
    """

    NOOP = "noop"
    REJECT = "reject"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").lower() in ("1", "true", "yes")


class Settings:
    """Application settings loaded from configuration manager and environment.

    Raises:
        ValueError: If a numeric or enum setting cannot be parsed
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager
        self._store_config: Optional[StoreConfig] = None

        self.app_name = _env("APP_NAME", APP_NAME)
        self.log_level = _env("LOG_LEVEL", "INFO").upper()
        self.json_logs = _env_bool("JSON_LOGS", False)

        self.batch_size = int(_env("BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
        self.batch_budget_seconds = float(_env("BATCH_BUDGET_SECONDS", str(DEFAULT_BATCH_BUDGET_SECONDS)))
        self.audit_timeout_seconds = float(_env("AUDIT_TIMEOUT_SECONDS", str(DEFAULT_AUDIT_TIMEOUT_SECONDS)))
        self.max_receive_count = int(_env("MAX_RECEIVE_COUNT", str(DEFAULT_MAX_RECEIVE_COUNT)))
        self.visibility_timeout_seconds = float(
            _env("VISIBILITY_TIMEOUT_SECONDS", str(DEFAULT_VISIBILITY_TIMEOUT_SECONDS))
        )

        self.blob_root = _env("BLOB_ROOT", DEFAULT_BLOB_ROOT)
        self.raw_bucket = _env("RAW_BUCKET", DEFAULT_RAW_BUCKET)
        self.csv_source = _env("CSV_SOURCE", DEFAULT_CSV_SOURCE)
        self.hl7_source = _env("HL7_SOURCE", DEFAULT_HL7_SOURCE)
        self.audit_enabled = _env_bool("AUDIT_ENABLED", True)
        self.replay_policy = ReplayPolicy(_env("REPLAY_POLICY", ReplayPolicy.NOOP.value).lower())

        if self.batch_size < 1:
            raise ValueError(f"{ENV_PREFIX}BATCH_SIZE must be >= 1, got {self.batch_size}")
        if self.max_receive_count < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_RECEIVE_COUNT must be >= 1, got {self.max_receive_count}")

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def store_config(self) -> StoreConfig:
        """Keyed-store configuration, loaded lazily on first access."""
        if self._store_config is None:
            self._store_config = self.config_manager.get_store_config()
        return self._store_config

    def as_dict(self) -> dict:
        """Effective configuration without credentials (for display)."""
        return {
            "app_name": self.app_name,
            "log_level": self.log_level,
            "json_logs": self.json_logs,
            "batch_size": self.batch_size,
            "batch_budget_seconds": self.batch_budget_seconds,
            "audit_timeout_seconds": self.audit_timeout_seconds,
            "audit_enabled": self.audit_enabled,
            "max_receive_count": self.max_receive_count,
            "visibility_timeout_seconds": self.visibility_timeout_seconds,
            "blob_root": self.blob_root,
            "raw_bucket": self.raw_bucket,
            "csv_source": self.csv_source,
            "hl7_source": self.hl7_source,
            "replay_policy": self.replay_policy.value,
            "store_type": self.store_config.db_type,
        }


# Global settings instance
settings = Settings()
