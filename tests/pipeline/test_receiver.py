"""Unit tests for the IngestReceiver and reprocess envelopes."""

import hashlib
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from clinical_etl.domain.models import RAW_SCHEMA, BlobReference
from clinical_etl.domain.ports import TransientInfrastructureError
from clinical_etl.infrastructure.audit import AuditNotifier, MemoryAuditSink
from clinical_etl.infrastructure.blob_store import LocalBlobStore
from clinical_etl.infrastructure.channels import InMemoryChannel
from clinical_etl.infrastructure.metrics import PipelineMetrics
from clinical_etl.pipeline.receiver import IngestReceiver, build_reprocess_envelope


FIXED_NOW = datetime(2025, 9, 30, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path))


@pytest.fixture
def downstream():
    return InMemoryChannel("raw")


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def metrics():
    return PipelineMetrics()


def make_receiver(blob_store, downstream, sink, metrics):
    return IngestReceiver(
        blob_store=blob_store,
        downstream=downstream,
        audit=AuditNotifier(sink),
        metrics=metrics,
        clock=lambda: FIXED_NOW,
        id_factory=lambda: "ingest-1",
    )


@pytest.fixture
def receiver(blob_store, downstream, sink, metrics):
    return make_receiver(blob_store, downstream, sink, metrics)


class TestReceive:
    """Structured JSON submissions."""

    @pytest.mark.asyncio
    async def test_envelope_and_blob(self, receiver, blob_store, downstream, metrics):
        body = {
            "metadata": {"tenantId": "t1", "source": "portal", "idempotencyKey": "K1"},
            "payload": {"studyInstanceUID": "1.2.3"},
        }

        receipt = await receiver.receive(body)

        assert receipt.ok is True
        assert receipt.key == "raw/t1/2025-09-30/ingest-1.json"
        stored = await blob_store.get(BlobReference(bucket="raw", key=receipt.key))
        assert json.loads(stored) == body
        assert receipt.message["metadata"] == {
            "tenantId": "t1",
            "source": "portal",
            "ingestedAt": "2025-09-30T10:00:00.000Z",
            "idempotencyKey": "K1",
            "contentHash": hashlib.sha256(stored).hexdigest(),
        }
        assert receipt.message["payload"] == {"studyInstanceUID": "1.2.3"}

        [message] = downstream.receive()
        assert message.message_id == receipt.message_id
        assert message.body["schema"] == RAW_SCHEMA
        assert message.attributes == {"schema": RAW_SCHEMA, "tenantId": "t1"}
        assert metrics.count("ingest_count") == 1
        assert len(metrics.timings("ingest_latency_ms")) == 1

    @pytest.mark.asyncio
    async def test_defaults(self, receiver):
        receipt = await receiver.receive({"note": "free text"})

        metadata = receipt.message["metadata"]
        assert metadata["tenantId"] == "unknown"
        assert metadata["source"] == "unknown"
        assert metadata["idempotencyKey"] == "ingest-1"
        assert receipt.message["payload"] == {"note": "free text"}
        assert receipt.key == "raw/unknown/2025-09-30/ingest-1.json"

    @pytest.mark.asyncio
    async def test_response_shape(self, receiver):
        receipt = await receiver.receive({"metadata": {"tenantId": "t1"}, "payload": {}})

        response = receipt.to_response()

        assert set(response) == {"ok", "key", "message"}
        assert response["ok"] is True

    @pytest.mark.asyncio
    async def test_audit_notification(self, receiver, sink):
        await receiver.receive({"metadata": {"tenantId": "t1"}, "payload": {}})
        await receiver.audit.drain()

        assert sink.payloads == [{
            "type": RAW_SCHEMA,
            "tenantId": "t1",
            "ingestId": "ingest-1",
            "traceId": "ingest-1",
            "blob": {"bucket": "raw", "key": "raw/t1/2025-09-30/ingest-1.json"},
        }]


class TestReceiveFile:
    """Document uploads referenced by blob."""

    @pytest.mark.asyncio
    async def test_csv_file(self, receiver, blob_store):
        data = b"patientId,code,value,unit,effectiveDateTime\n"
        digest = hashlib.sha256(data).hexdigest()

        receipt = await receiver.receive_file(data, "labs/Results.CSV", tenant_id="t1")

        assert receipt.key == "raw/t1/2025-09-30/ingest-1.csv"
        assert receipt.message["payload"] == {
            "blob": {"bucket": "raw", "key": receipt.key},
            "contentType": "text/csv",
        }
        metadata = receipt.message["metadata"]
        assert metadata["source"] == "file:Results.CSV"
        assert metadata["idempotencyKey"] == f"sha256:{digest}"
        assert metadata["contentHash"] == digest
        assert blob_store.head(BlobReference(bucket="raw", key=receipt.key))["contentType"] == "text/csv"

    @pytest.mark.asyncio
    async def test_explicit_overrides(self, receiver):
        receipt = await receiver.receive_file(
            b"MSH|^~\\&|", "feed.txt", tenant_id="t1", source="hl7v2:mllp",
            content_type="application/hl7-v2", idempotency_key="MSG0001",
        )

        assert receipt.message["payload"]["contentType"] == "application/hl7-v2"
        assert receipt.message["metadata"]["source"] == "hl7v2:mllp"
        assert receipt.message["metadata"]["idempotencyKey"] == "MSG0001"

    @pytest.mark.asyncio
    async def test_tenant_required(self, receiver):
        with pytest.raises(ValueError):
            await receiver.receive_file(b"x", "a.csv", tenant_id="")

    @pytest.mark.asyncio
    async def test_emit_failure_counted(self, blob_store, sink, metrics):
        downstream = Mock()
        downstream.send = AsyncMock(side_effect=OSError("queue unavailable"))
        receiver = make_receiver(blob_store, downstream, sink, metrics)

        with pytest.raises(TransientInfrastructureError, match="queue unavailable"):
            await receiver.receive_file(b"a", "a.csv", tenant_id="t1")

        assert metrics.count("ingest_error_count") == 1
        assert metrics.count("ingest_count") == 0


class TestReprocessEnvelope:
    """Envelopes for already-stored blobs."""

    def test_envelope(self):
        envelope = build_reprocess_envelope("t1", "raw", "raw/t1/2025-09-30/x.hl7", ingested_at="2025-10-01T00:00:00Z")

        assert envelope == {
            "schema": RAW_SCHEMA,
            "metadata": {
                "tenantId": "t1",
                "source": "reprocess",
                "ingestedAt": "2025-10-01T00:00:00Z",
                "idempotencyKey": "reproc:raw/t1/2025-09-30/x.hl7",
            },
            "payload": {
                "blob": {"bucket": "raw", "key": "raw/t1/2025-09-30/x.hl7"},
                "contentType": "application/hl7-v2",
            },
        }

    @pytest.mark.parametrize("tenant,bucket,key", [
        ("", "raw", "k"),
        ("t1", "", "k"),
        ("t1", "raw", ""),
    ])
    def test_required_fields(self, tenant, bucket, key):
        with pytest.raises(ValueError, match="required"):
            build_reprocess_envelope(tenant, bucket, key)
