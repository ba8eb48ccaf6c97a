"""Normalization Orchestrator.

Consumes ``ingest.raw.v1`` envelopes and emits one ``etl.normalized.v1``
event per surviving record. For each batch item, independently:

1. Validate the raw envelope (failure fails the whole item).
2. Route to exactly one format variant (CSV, HL7 v2, generic).
3. For every DTO: validate, map to a FHIR Observation, validate the resource.
   A DTO failing either validation is dropped and counted.
4. Emit each surviving record downstream and fire a best-effort audit
   notification.

Security Impact:
    - Tenant identity is carried from the raw envelope into every event
    - Dropped records are logged with their reason, never their payload

Architecture:
    - Adapters, validators, blob store, downstream channel and audit notifier
      are injected (Hexagonal Architecture)
    - Parsing, mapping and validation are synchronous; blob fetch, emission
      and audit dispatch are the only suspension points
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from clinical_etl.adapters.ingesters import JSONIngester, build_adapters
from clinical_etl.domain.formats import SourceFormat, blob_reference, resolve_format
from clinical_etl.domain.lifecycle import RecordLifecycle, RecordState
from clinical_etl.domain.mapper import dto_to_observation
from clinical_etl.domain.models import (
    NORMALIZED_SCHEMA,
    RAW_SCHEMA,
    CanonicalObservation,
    NormalizedEventEnvelope,
    RawEnvelope,
    utc_now_iso,
)
from clinical_etl.domain.ports import (
    AdapterContext,
    BlobStorePort,
    EnvelopeValidationError,
    IngestionPort,
    MessageChannelPort,
    PipelineError,
    RecordParseError,
    Result,
    TransientInfrastructureError,
)
from clinical_etl.domain.validators import Validators, get_validators
from clinical_etl.infrastructure.audit import AuditNotifier
from clinical_etl.infrastructure.channels import ChannelMessage
from clinical_etl.infrastructure.metrics import PipelineMetrics
from clinical_etl.pipeline.batch import BatchReport, run_batch

logger = logging.getLogger(__name__)


def _new_trace_id() -> str:
    return uuid.uuid4().hex


@dataclass
class NormalizationSummary:
    """What one raw envelope produced."""

    message_id: str
    source_format: SourceFormat
    emitted: int = 0
    dropped: int = 0
    entity_ids: list[str] = field(default_factory=list)


class NormalizationOrchestrator:
    """Raw envelope -> normalized events, with per-item failure isolation.

    Parameters:
        blob_store: Source of referenced CSV/HL7/JSON blobs
        downstream: Channel receiving ``etl.normalized.v1`` events
        audit: Best-effort audit notifier
        metrics: Counter/timer sink
        validators: Process-wide validators (defaults to ``get_validators()``)
        adapters: One adapter per SourceFormat (defaults to the registry)
        source_labels: Source-system label per file format
        budget_seconds: Wall-clock budget of one batch
        clock: Returns the ``normalizedAt`` timestamp
        trace_ids: Returns a fresh trace id per emitted record
    """

    def __init__(
        self,
        blob_store: BlobStorePort,
        downstream: MessageChannelPort,
        audit: AuditNotifier,
        metrics: PipelineMetrics,
        validators: Optional[Validators] = None,
        adapters: Optional[dict[SourceFormat, IngestionPort]] = None,
        source_labels: Optional[dict[SourceFormat, str]] = None,
        budget_seconds: Optional[float] = 30.0,
        clock: Optional[Callable[[], str]] = None,
        trace_ids: Optional[Callable[[], str]] = None
    ):
        self.blob_store = blob_store
        self.downstream = downstream
        self.audit = audit
        self.metrics = metrics
        self.validators = validators or get_validators()
        self.adapters = adapters or build_adapters(self.validators)
        self.source_labels = source_labels or {}
        self.budget_seconds = budget_seconds
        self._clock = clock or utc_now_iso
        self._trace_ids = trace_ids or _new_trace_id

    async def handle_batch(self, messages: Iterable[ChannelMessage]) -> BatchReport:
        """Normalize a batch; the report lists the items to redeliver."""
        with self.metrics.timer("normalize_batch_time_ms"):
            return await run_batch(messages, self.handle_message, self.budget_seconds)

    async def handle_message(self, message: ChannelMessage) -> NormalizationSummary:
        """Normalize one raw envelope.

        Raises:
            EnvelopeValidationError: Malformed raw envelope or missing blob reference
            UnsupportedFormatError: Referenced content cannot be parsed at all
            TransientInfrastructureError: Blob fetch or downstream emission failed
        """
        item = RecordLifecycle(message.message_id, "normalize")
        started = time.perf_counter()
        try:
            item.advance(RecordState.VALIDATING)
            envelope: RawEnvelope = self.validators.envelope.require(
                RAW_SCHEMA, message.body, source=message.message_id
            )
            item.advance(RecordState.VALID)

            source_format = resolve_format(envelope)
            summary = NormalizationSummary(message_id=message.message_id, source_format=source_format)
            item.advance(RecordState.TRANSFORMING)
            if source_format.requires_blob:
                await self._normalize_file(envelope, source_format, summary)
            else:
                await self._normalize_generic(envelope, summary)
            item.advance(RecordState.EMITTED)
        except PipelineError as e:
            self.metrics.increment("normalize_error_count")
            if not item.is_terminal:
                item.fail(str(e))
            raise

        self.metrics.observe_ms("transform_time_ms", (time.perf_counter() - started) * 1000.0)
        logger.info(
            f"Normalized {message.message_id} ({summary.source_format.value}): "
            f"{summary.emitted} emitted, {summary.dropped} dropped",
            extra={"message_id": message.message_id, "tenant_id": envelope.metadata.tenant_id},
        )
        return summary

    # ------------------------------------------------------------------
    # Format paths
    # ------------------------------------------------------------------

    async def _normalize_file(
        self,
        envelope: RawEnvelope,
        source_format: SourceFormat,
        summary: NormalizationSummary
    ) -> None:
        reference = blob_reference(envelope)
        if reference is None:
            raise EnvelopeValidationError(
                f"{source_format.value} ingest missing blob bucket/key",
                source=summary.message_id,
            )
        buffer = await self.blob_store.get(reference)

        adapter = self.adapters[source_format]
        context = AdapterContext(
            tenant_id=envelope.metadata.tenant_id,
            source_system=self.source_labels.get(source_format),
        )
        for index, result in enumerate(adapter.iter_results(buffer, context), start=1):
            await self._process_result(result, envelope, summary, index)

    async def _normalize_generic(self, envelope: RawEnvelope, summary: NormalizationSummary) -> None:
        passthrough = self.adapters[SourceFormat.GENERIC]
        if not isinstance(passthrough, JSONIngester):
            raise TypeError("The generic format requires a JSONIngester passthrough adapter")

        reference = blob_reference(envelope)
        if reference is not None:
            records = passthrough.load(await self.blob_store.get(reference))
        else:
            records = [envelope.payload]

        context = AdapterContext(tenant_id=envelope.metadata.tenant_id, source_system=envelope.metadata.source)
        for index, record in enumerate(records, start=1):
            if JSONIngester.is_observation_candidate(record):
                await self._process_result(passthrough.coerce(record, context, index), envelope, summary, index)
            elif isinstance(record, dict):
                suffix = f"#{index}" if len(records) > 1 else ""
                await self._emit_entity(record, envelope, summary, suffix)
            else:
                error = RecordParseError(
                    f"Record {index}: expected an object, got {type(record).__name__}", source=f"record:{index}"
                )
                self._drop(summary, index, str(error), "dto_invalid_count")

    # ------------------------------------------------------------------
    # Per-record processing
    # ------------------------------------------------------------------

    async def _process_result(
        self,
        result: Result[CanonicalObservation],
        envelope: RawEnvelope,
        summary: NormalizationSummary,
        index: int
    ) -> None:
        if result.is_failure():
            self._drop(summary, index, result.error, "dto_invalid_count")
            return

        record = RecordLifecycle(f"{summary.message_id}:{index}", "normalize")
        record.advance(RecordState.VALIDATING)
        checked = self.validators.dto.validate(result.value)
        if checked.is_failure():
            self._drop(summary, index, checked.error, "dto_invalid_count", record)
            return
        dto = checked.value
        record.advance(RecordState.VALID)
        self.metrics.increment("dto_valid_count")

        record.advance(RecordState.TRANSFORMING)
        resource = dto_to_observation(dto)
        profile = self.validators.output.validate(resource)
        if profile.is_failure():
            self._drop(summary, index, profile.error, "fhir_invalid_count", record)
            return

        body = self._build_event(
            envelope,
            entity_type="observation",
            entity_id=dto.entity_id,
            patient_id=dto.patient_id,
            attributes={"dto": dto.to_wire(), "fhir": resource},
        )
        await self._emit(body, envelope, summary, record)

    async def _emit_entity(
        self,
        payload: dict[str, Any],
        envelope: RawEnvelope,
        summary: NormalizationSummary,
        suffix: str = ""
    ) -> None:
        study_uid = payload.get("studyInstanceUID")
        if study_uid:
            entity_type, entity_id = "study", str(study_uid)
        else:
            entity_type, entity_id = "observation", f"{envelope.metadata.idempotency_key}{suffix}"

        record = RecordLifecycle(f"{summary.message_id}:{entity_id}", "normalize")
        record.advance(RecordState.VALIDATING)
        record.advance(RecordState.VALID)
        self.metrics.increment("dto_valid_count")
        record.advance(RecordState.TRANSFORMING)
        body = self._build_event(
            envelope,
            entity_type=entity_type,
            entity_id=entity_id,
            patient_id=payload.get("patientId"),
            modality=payload.get("modality"),
            attributes=dict(payload),
        )
        await self._emit(body, envelope, summary, record)

    def _build_event(
        self,
        envelope: RawEnvelope,
        entity_type: str,
        entity_id: str,
        attributes: dict[str, Any],
        patient_id: Any = None,
        modality: Any = None
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "entityType": entity_type,
            "entityId": entity_id,
            "attributes": attributes,
        }
        if patient_id is not None:
            data["patientId"] = str(patient_id)
        if modality is not None:
            data["modality"] = str(modality)
        return {
            "schema": NORMALIZED_SCHEMA,
            "metadata": {
                "tenantId": envelope.metadata.tenant_id,
                "source": envelope.metadata.source,
                "normalizedAt": self._clock(),
                "idempotencyKey": envelope.metadata.idempotency_key,
                "traceId": self._trace_ids(),
            },
            "data": data,
        }

    async def _emit(
        self,
        body: dict[str, Any],
        envelope: RawEnvelope,
        summary: NormalizationSummary,
        record: RecordLifecycle
    ) -> None:
        try:
            event: NormalizedEventEnvelope = self.validators.envelope.require(
                NORMALIZED_SCHEMA, body, source=summary.message_id
            )
            wire = event.to_wire()
            await self.downstream.send(
                wire,
                {"schema": NORMALIZED_SCHEMA, "tenantId": event.metadata.tenant_id},
            )
        except PipelineError as e:
            record.fail(str(e))
            raise
        except Exception as e:
            record.fail(str(e))
            raise TransientInfrastructureError(
                f"Failed to emit normalized event: {str(e)}", source=summary.message_id
            ) from e

        record.advance(RecordState.EMITTED)
        summary.emitted += 1
        summary.entity_ids.append(event.data.entity_id)
        self.metrics.increment("normalize_count")
        self.audit.notify({
            "type": NORMALIZED_SCHEMA,
            "tenantId": event.metadata.tenant_id,
            "traceId": event.metadata.trace_id,
            "object": {"entityType": event.data.entity_type, "entityId": event.data.entity_id},
        })
        logger.debug(
            f"Emitted {event.data.entity_type} {event.data.entity_id}",
            extra={"trace_id": event.metadata.trace_id, "tenant_id": envelope.metadata.tenant_id},
        )

    def _drop(
        self,
        summary: NormalizationSummary,
        index: int,
        reason: Optional[str],
        counter: str,
        record: Optional[RecordLifecycle] = None
    ) -> None:
        if record is None:
            record = RecordLifecycle(f"{summary.message_id}:{index}", "normalize")
            record.advance(RecordState.VALIDATING)
        record.drop(reason or "invalid")
        summary.dropped += 1
        self.metrics.increment(counter)
        logger.warning(
            f"Record {index} of {summary.message_id} dropped: {reason}",
            extra={"message_id": summary.message_id, "record_index": index},
        )
