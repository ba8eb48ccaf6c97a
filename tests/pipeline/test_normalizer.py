"""Unit tests for the NormalizationOrchestrator.

Tests cover:
- CSV, HL7 and generic routing
- Per-record drops counted, siblings emitted
- Whole-item failures (bad envelope, missing blob, emission failure)
- Audit notification payloads
"""

import itertools
from unittest.mock import AsyncMock, Mock

import pytest

from clinical_etl.domain.formats import SourceFormat
from clinical_etl.domain.models import NORMALIZED_SCHEMA, RAW_SCHEMA
from clinical_etl.domain.ports import (
    BlobNotFoundError,
    EnvelopeValidationError,
    OutputValidationError,
    Result,
    TransientInfrastructureError,
)
from clinical_etl.domain.validators import Validators, get_validators
from clinical_etl.infrastructure.audit import AuditNotifier, MemoryAuditSink
from clinical_etl.infrastructure.blob_store import LocalBlobStore
from clinical_etl.infrastructure.channels import ChannelMessage, InMemoryChannel
from clinical_etl.infrastructure.metrics import PipelineMetrics
from clinical_etl.pipeline.normalizer import NormalizationOrchestrator


NOW = "2025-09-30T10:05:00.000Z"

LAB_CSV = (
    b"patientId,code,value,unit,effectiveDateTime\n"
    b"p1,718-7,13.5,g/dL,2025-09-30T10:00:00Z\n"
    b"p2,718-7,12.1,g/dL,2025-09-30T11:00:00Z\n"
    b"p3,718-7,11.0,,2025-09-30T12:00:00Z\n"
)

ORU_MESSAGE = "\r".join([
    "MSH|^~\\&|LAB|FAC|EHR|FAC|20250930101500||ORU^R01|MSG0001|P|2.5",
    "PID|1||12345^^^HOSP^MR||Doe^Jane",
    "OBX|1|NM|718-7^Hemoglobin^LN||13.5|g/dL|||||F|||20250930100000",
    "OBX|2|ST|5778-6^Color^LN||yellow||||||F|||20250930100000",
]).encode("utf-8")


def raw_message(payload, message_id="m-1", tenant="t1", key="K1"):
    return ChannelMessage(message_id=message_id, body={
        "schema": RAW_SCHEMA,
        "metadata": {
            "tenantId": tenant,
            "source": "api",
            "ingestedAt": "2025-09-30T10:00:00Z",
            "idempotencyKey": key,
        },
        "payload": payload,
    })


def blob_payload(key, content_type):
    return {"blob": {"bucket": "raw", "key": key}, "contentType": content_type}


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path))


@pytest.fixture
def downstream():
    return InMemoryChannel("normalized")


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def metrics():
    return PipelineMetrics()


def make_orchestrator(blob_store, downstream, sink, metrics, **kwargs):
    counter = itertools.count(1)
    return NormalizationOrchestrator(
        blob_store=blob_store,
        downstream=downstream,
        audit=AuditNotifier(sink),
        metrics=metrics,
        source_labels={SourceFormat.CSV: "csv:labx", SourceFormat.CLINICAL_MESSAGE: "hl7v2:file"},
        clock=lambda: NOW,
        trace_ids=lambda: f"trace-{next(counter)}",
        **kwargs,
    )


@pytest.fixture
def orchestrator(blob_store, downstream, sink, metrics):
    return make_orchestrator(blob_store, downstream, sink, metrics)


def emitted_bodies(channel):
    return [m.body for m in channel.receive(100)]


class TestFileFormats:
    """CSV and HL7 blobs."""

    @pytest.mark.asyncio
    async def test_csv_two_emitted_one_dropped(self, orchestrator, blob_store, downstream, metrics):
        await blob_store.put("raw", "raw/t1/labs.csv", LAB_CSV)

        summary = await orchestrator.handle_message(raw_message(blob_payload("raw/t1/labs.csv", "text/csv")))

        assert summary.source_format is SourceFormat.CSV
        assert (summary.emitted, summary.dropped) == (2, 1)
        assert summary.entity_ids == ["p1:718-7:2025-09-30T10:00:00Z", "p2:718-7:2025-09-30T11:00:00Z"]
        assert metrics.count("normalize_count") == 2
        assert metrics.count("dto_valid_count") == 2
        assert metrics.count("dto_invalid_count") == 1

        first = emitted_bodies(downstream)[0]
        assert first["schema"] == NORMALIZED_SCHEMA
        assert first["metadata"] == {
            "tenantId": "t1",
            "source": "api",
            "normalizedAt": NOW,
            "idempotencyKey": "K1",
            "traceId": "trace-1",
        }
        assert first["data"]["entityType"] == "observation"
        assert first["data"]["patientId"] == "p1"
        assert first["data"]["attributes"]["dto"]["sourceSystem"] == "csv:labx"
        assert first["data"]["attributes"]["fhir"]["resourceType"] == "Observation"

    @pytest.mark.asyncio
    async def test_hl7_non_numeric_segment_dropped(self, orchestrator, blob_store, downstream, metrics):
        await blob_store.put("raw", "raw/t1/oru.hl7", ORU_MESSAGE)

        summary = await orchestrator.handle_message(
            raw_message(blob_payload("raw/t1/oru.hl7", "application/hl7-v2"))
        )

        assert summary.source_format is SourceFormat.CLINICAL_MESSAGE
        assert (summary.emitted, summary.dropped) == (1, 1)
        [event] = emitted_bodies(downstream)
        assert event["data"]["patientId"] == "12345"
        assert event["data"]["attributes"]["dto"]["sourceSystem"] == "hl7v2:file"

    @pytest.mark.asyncio
    async def test_profile_failure_counted_separately(self, blob_store, downstream, sink, metrics):
        base = get_validators()
        failing_output = Mock()
        failing_output.validate.return_value = Result.failure_result(OutputValidationError("bad profile"))
        validators = Validators(dto=base.dto, envelope=base.envelope, output=failing_output)
        orchestrator = make_orchestrator(blob_store, downstream, sink, metrics, validators=validators)
        await blob_store.put("raw", "raw/t1/labs.csv", LAB_CSV)

        summary = await orchestrator.handle_message(raw_message(blob_payload("raw/t1/labs.csv", "text/csv")))

        assert (summary.emitted, summary.dropped) == (0, 3)
        assert metrics.count("fhir_invalid_count") == 2
        assert metrics.count("dto_invalid_count") == 1
        assert downstream.is_idle()


class TestGenericFormat:
    """Inline payloads."""

    @pytest.mark.asyncio
    async def test_study_payload(self, orchestrator, downstream):
        payload = {"studyInstanceUID": "1.2.840.1", "patientId": "p9", "modality": "CT"}

        summary = await orchestrator.handle_message(raw_message(payload))

        assert summary.source_format is SourceFormat.GENERIC
        [event] = emitted_bodies(downstream)
        assert event["data"] == {
            "entityType": "study",
            "entityId": "1.2.840.1",
            "patientId": "p9",
            "modality": "CT",
            "attributes": payload,
        }

    @pytest.mark.asyncio
    async def test_opaque_payload_keyed_by_idempotency_key(self, orchestrator, downstream):
        await orchestrator.handle_message(raw_message({"note": "free text"}, key="K-77"))

        [event] = emitted_bodies(downstream)
        assert event["data"]["entityType"] == "observation"
        assert event["data"]["entityId"] == "K-77"

    @pytest.mark.asyncio
    async def test_inline_observation_validated_as_dto(self, orchestrator, downstream, metrics):
        payload = {
            "patientId": "p1",
            "code": "718-7",
            "value": "13.5",
            "unit": "g/dL",
            "effectiveDateTime": "2025-09-30T10:00:00Z",
        }

        summary = await orchestrator.handle_message(raw_message(payload))

        assert summary.entity_ids == ["p1:718-7:2025-09-30T10:00:00Z"]
        [event] = emitted_bodies(downstream)
        assert event["data"]["attributes"]["dto"]["value"] == 13.5
        assert event["data"]["attributes"]["dto"]["sourceSystem"] == "api"

    @pytest.mark.asyncio
    async def test_inline_observation_missing_unit_dropped(self, orchestrator, downstream, metrics):
        payload = {"patientId": "p1", "code": "718-7", "value": 1, "effectiveDateTime": "2025-09-30T10:00:00Z"}

        summary = await orchestrator.handle_message(raw_message(payload))

        assert (summary.emitted, summary.dropped) == (0, 1)
        assert metrics.count("dto_invalid_count") == 1

    @pytest.mark.asyncio
    async def test_json_blob_records(self, orchestrator, blob_store, downstream):
        await blob_store.put("raw", "raw/t1/batch.json", b'{"records": [{"note": "a"}, {"note": "b"}, 3]}')

        summary = await orchestrator.handle_message(
            raw_message(blob_payload("raw/t1/batch.json", "application/json"), key="K5")
        )

        assert summary.entity_ids == ["K5#1", "K5#2"]
        assert summary.dropped == 1


class TestItemFailures:
    """Errors that fail the whole item."""

    @pytest.mark.asyncio
    async def test_malformed_envelope(self, orchestrator, metrics):
        message = ChannelMessage(message_id="m-1", body={"schema": RAW_SCHEMA, "metadata": {}})

        with pytest.raises(EnvelopeValidationError):
            await orchestrator.handle_message(message)
        assert metrics.count("normalize_error_count") == 1

    @pytest.mark.asyncio
    async def test_file_format_without_blob_reference(self, orchestrator):
        with pytest.raises(EnvelopeValidationError, match="missing blob"):
            await orchestrator.handle_message(raw_message({"contentType": "text/csv"}))

    @pytest.mark.asyncio
    async def test_referenced_blob_missing(self, orchestrator):
        with pytest.raises(BlobNotFoundError):
            await orchestrator.handle_message(raw_message(blob_payload("raw/t1/absent.csv", "text/csv")))

    @pytest.mark.asyncio
    async def test_emission_failure_is_transient(self, blob_store, sink, metrics):
        downstream = Mock()
        downstream.send = AsyncMock(side_effect=ConnectionError("queue unavailable"))
        orchestrator = make_orchestrator(blob_store, downstream, sink, metrics)

        with pytest.raises(TransientInfrastructureError, match="queue unavailable"):
            await orchestrator.handle_message(raw_message({"note": "x"}))

    @pytest.mark.asyncio
    async def test_batch_isolates_bad_item(self, orchestrator, downstream):
        good = raw_message({"note": "ok"}, message_id="good")
        bad = ChannelMessage(message_id="bad", body={"schema": "ingest.raw.v2"})

        report = await orchestrator.handle_batch([good, bad])

        assert report.succeeded == ["good"]
        assert report.to_response() == {"batchItemFailures": [{"itemIdentifier": "bad"}]}
        assert len(emitted_bodies(downstream)) == 1


class TestAudit:
    """Best-effort audit notifications."""

    @pytest.mark.asyncio
    async def test_one_notification_per_emitted_record(self, orchestrator, blob_store, sink):
        await blob_store.put("raw", "raw/t1/labs.csv", LAB_CSV)

        await orchestrator.handle_message(raw_message(blob_payload("raw/t1/labs.csv", "text/csv")))
        await orchestrator.audit.drain()

        assert sink.payloads == [
            {
                "type": NORMALIZED_SCHEMA,
                "tenantId": "t1",
                "traceId": "trace-1",
                "object": {"entityType": "observation", "entityId": "p1:718-7:2025-09-30T10:00:00Z"},
            },
            {
                "type": NORMALIZED_SCHEMA,
                "tenantId": "t1",
                "traceId": "trace-2",
                "object": {"entityType": "observation", "entityId": "p2:718-7:2025-09-30T11:00:00Z"},
            },
        ]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_item(self, blob_store, downstream, metrics):
        failing = Mock()
        failing.deliver = AsyncMock(side_effect=ConnectionError("audit down"))
        orchestrator = make_orchestrator(blob_store, downstream, failing, metrics)

        summary = await orchestrator.handle_message(raw_message({"note": "x"}))
        await orchestrator.audit.drain()

        assert summary.emitted == 1
        assert orchestrator.audit.failed_count == 1
