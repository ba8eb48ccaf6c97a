"""Pipeline wiring and local end-to-end runs.

This module assembles the three stages around local collaborators:

    IngestReceiver -> raw channel -> NormalizationOrchestrator
        -> normalized channel -> PersistenceEngine -> persisted channel

and drives the channels until they are idle. The keyed store is chosen by
configuration (DuckDB by default, PostgreSQL when configured).

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is configured via configuration manager
    - Every collaborator is injected, so tests can swap any of them
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from clinical_etl.adapters.ingesters import build_adapters
from clinical_etl.adapters.storage import DuckDBKeyedStore, PostgreSQLKeyedStore
from clinical_etl.domain.formats import SourceFormat
from clinical_etl.domain.ports import AuditSinkPort, KeyedStorePort, StoreError
from clinical_etl.domain.validators import get_validators
from clinical_etl.infrastructure.audit import AuditNotifier, LoggingAuditSink
from clinical_etl.infrastructure.blob_store import LocalBlobStore
from clinical_etl.infrastructure.channels import InMemoryChannel
from clinical_etl.infrastructure.config_manager import StoreConfig
from clinical_etl.infrastructure.metrics import PipelineMetrics
from clinical_etl.infrastructure.settings import Settings, settings as default_settings
from clinical_etl.pipeline.batch import BatchReport, drive_channel
from clinical_etl.pipeline.normalizer import NormalizationOrchestrator
from clinical_etl.pipeline.persister import PersistenceEngine
from clinical_etl.pipeline.receiver import IngestReceipt, IngestReceiver

logger = logging.getLogger(__name__)


def create_keyed_store(store_config: Optional[StoreConfig] = None) -> KeyedStorePort:
    """Create the keyed store based on configuration.

    Raises:
        StoreError: If the store cannot be created or its schema initialized
    """
    store_config = store_config or default_settings.store_config

    if store_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB keyed store with path: {store_config.db_path or ':memory:'}")
        store: KeyedStorePort = DuckDBKeyedStore(db_config=store_config)
    elif store_config.db_type == "postgresql":
        logger.info(f"Initializing PostgreSQL keyed store with host: {store_config.host}")
        store = PostgreSQLKeyedStore(db_config=store_config)
    else:
        raise StoreError(f"Unsupported store type: {store_config.db_type}", operation="__init__")

    result = store.initialize_schema()
    if result.is_failure():
        raise StoreError(result.error, operation="initialize_schema")
    return store


@dataclass
class PipelineRun:
    """What one local run produced."""

    receipts: list[IngestReceipt] = field(default_factory=list)
    normalize_reports: list[BatchReport] = field(default_factory=list)
    persist_reports: list[BatchReport] = field(default_factory=list)
    dead_lettered: int = 0
    unfinished: int = 0
    metrics: dict = field(default_factory=dict)

    @property
    def item_failures(self) -> int:
        """Failed deliveries, including attempts that succeeded on redelivery."""
        reports = self.normalize_reports + self.persist_reports
        return sum(report.failed_count for report in reports)

    @property
    def failed(self) -> bool:
        return self.dead_lettered > 0 or self.unfinished > 0


@dataclass
class Pipeline:
    """The assembled stages and their channels."""

    settings: Settings
    store: KeyedStorePort
    blob_store: LocalBlobStore
    metrics: PipelineMetrics
    audit: AuditNotifier
    raw_channel: InMemoryChannel
    normalized_channel: InMemoryChannel
    persisted_channel: InMemoryChannel
    receiver: IngestReceiver
    normalizer: NormalizationOrchestrator
    persister: PersistenceEngine

    async def run_until_idle(self, max_rounds: int = 100) -> PipelineRun:
        """Drive the raw and normalized channels until both are idle.

        Failed items are nacked and retried until dead-lettered, so the loop
        always terminates once every message is acked or dead-lettered.
        """
        run = PipelineRun()
        batch_size = self.settings.batch_size
        budget = self.settings.batch_budget_seconds
        for _ in range(max_rounds):
            if self.raw_channel.is_idle() and self.normalized_channel.is_idle():
                break
            report = await drive_channel(self.raw_channel, self.normalizer.handle_batch, batch_size, budget)
            if report is not None:
                run.normalize_reports.append(report)
            report = await drive_channel(self.normalized_channel, self.persister.handle_batch, batch_size, budget)
            if report is not None:
                run.persist_reports.append(report)
        else:
            logger.warning(f"Pipeline still busy after {max_rounds} rounds")

        await self.audit.drain()
        run.dead_lettered = self.raw_channel.dead_letter_count + self.normalized_channel.dead_letter_count
        run.unfinished = sum(
            channel.pending_count + channel.in_flight_count
            for channel in (self.raw_channel, self.normalized_channel)
        )
        run.metrics = self.metrics.snapshot()
        return run

    async def ingest_file(
        self,
        path: Path,
        tenant_id: str,
        source: Optional[str] = None,
        content_type: Optional[str] = None
    ) -> PipelineRun:
        """Store a file, emit its raw envelope and run the pipeline to completion."""
        data = await asyncio.to_thread(path.read_bytes)
        receipt = await self.receiver.receive_file(
            data, path.name, tenant_id, source=source, content_type=content_type
        )
        run = await self.run_until_idle()
        run.receipts.append(receipt)
        return run

    def close(self) -> None:
        self.store.close()


def build_pipeline(
    settings: Optional[Settings] = None,
    store: Optional[KeyedStorePort] = None,
    audit_sink: Optional[AuditSinkPort] = None
) -> Pipeline:
    """Assemble the pipeline from settings, with optional overrides."""
    settings = settings or default_settings
    store = store or create_keyed_store(settings.store_config)
    validators = get_validators()
    metrics = PipelineMetrics()
    if audit_sink is None and settings.audit_enabled:
        audit_sink = LoggingAuditSink()
    audit = AuditNotifier(audit_sink, timeout_seconds=settings.audit_timeout_seconds)
    blob_store = LocalBlobStore(settings.blob_root)

    def channel(name: str) -> InMemoryChannel:
        return InMemoryChannel(
            name,
            max_receive_count=settings.max_receive_count,
            visibility_timeout=settings.visibility_timeout_seconds,
        )

    raw_channel = channel("ingest-raw")
    normalized_channel = channel("etl-normalized")
    persisted_channel = channel("etl-persisted")

    return Pipeline(
        settings=settings,
        store=store,
        blob_store=blob_store,
        metrics=metrics,
        audit=audit,
        raw_channel=raw_channel,
        normalized_channel=normalized_channel,
        persisted_channel=persisted_channel,
        receiver=IngestReceiver(
            blob_store, raw_channel, audit, metrics, raw_bucket=settings.raw_bucket, validators=validators
        ),
        normalizer=NormalizationOrchestrator(
            blob_store,
            normalized_channel,
            audit,
            metrics,
            validators=validators,
            adapters=build_adapters(validators),
            source_labels={
                SourceFormat.CSV: settings.csv_source,
                SourceFormat.CLINICAL_MESSAGE: settings.hl7_source,
            },
            budget_seconds=settings.batch_budget_seconds,
        ),
        persister=PersistenceEngine(
            store,
            persisted_channel,
            audit,
            metrics,
            validators=validators,
            replay_policy=settings.replay_policy,
            budget_seconds=settings.batch_budget_seconds,
        ),
    )


def process_file(
    path: str,
    tenant_id: str,
    source: Optional[str] = None,
    content_type: Optional[str] = None,
    settings: Optional[Settings] = None
) -> PipelineRun:
    """Synchronous entry point: ingest one file end-to-end and close the store."""
    pipeline = build_pipeline(settings)
    try:
        return asyncio.run(pipeline.ingest_file(Path(path), tenant_id, source=source, content_type=content_type))
    finally:
        pipeline.close()
