"""Unit tests for the canonical models, format routing and record lifecycle."""

import pytest
from pydantic import ValidationError

from clinical_etl.adapters.ingesters import CSVIngester, HL7Ingester, JSONIngester, build_adapters
from clinical_etl.domain.formats import (
    SourceFormat,
    blob_reference,
    content_type_for_key,
    detect_format,
    resolve_format,
)
from clinical_etl.domain.lifecycle import IllegalTransitionError, RecordLifecycle, RecordState, TERMINAL_STATES
from clinical_etl.domain.models import (
    RAW_SCHEMA,
    EntityKeys,
    NormalizedEventEnvelope,
    RawEnvelope,
    parse_iso_datetime,
)
from clinical_etl.domain.ports import (
    BlobNotFoundError,
    ConditionalWriteConflict,
    Disposition,
    EnvelopeValidationError,
    OutputValidationError,
    RecordParseError,
    Result,
    StoreError,
    TransientInfrastructureError,
    ValidationIssue,
)


def raw(payload, **metadata):
    base = {
        "tenantId": "t1",
        "source": "api",
        "ingestedAt": "2025-09-30T10:00:00Z",
        "idempotencyKey": "K1",
    }
    base.update(metadata)
    return RawEnvelope.model_validate({"schema": RAW_SCHEMA, "metadata": base, "payload": payload})


class TestWireModels:
    """camelCase wire shapes."""

    def test_parse_iso_datetime_requires_offset(self):
        assert parse_iso_datetime("2025-09-30T10:00:00Z").utcoffset().total_seconds() == 0
        with pytest.raises(ValueError):
            parse_iso_datetime("2025-09-30 10:00:00")

    def test_raw_envelope_round_trip_keeps_extra_metadata(self):
        envelope = raw({"a": None}, uploader="u-1")

        wire = envelope.to_wire()

        assert wire["schema"] == RAW_SCHEMA
        assert wire["metadata"]["uploader"] == "u-1"
        assert "contentHash" not in wire["metadata"]
        assert wire["payload"] == {"a": None}

    def test_legacy_s3_blob_reference_accepted(self):
        envelope = raw({}, s3={"bucket": "raw", "key": "raw/t1/a.csv"})

        assert envelope.metadata.blob.key == "raw/t1/a.csv"
        assert envelope.to_wire()["metadata"]["blob"] == {"bucket": "raw", "key": "raw/t1/a.csv"}

    def test_models_are_frozen(self):
        envelope = raw({})

        with pytest.raises(ValidationError):
            envelope.metadata.tenant_id = "other"

    def test_normalized_envelope_populated_by_name(self):
        event = NormalizedEventEnvelope.model_validate({
            "schema": "etl.normalized.v1",
            "metadata": {
                "tenant_id": "t1",
                "source": "api",
                "normalized_at": "2025-09-30T10:00:00Z",
                "idempotency_key": "K1",
                "trace_id": "x",
            },
            "data": {"entity_type": "patient", "entity_id": "p1"},
        })

        assert event.to_wire()["data"] == {"entityType": "patient", "entityId": "p1", "attributes": {}}

    def test_entity_keys(self):
        keys = EntityKeys.for_entity("t1", "observation", "p1:718-7:2025-09-30T10:00:00Z")

        assert keys.pk == "TENANT#t1"
        assert keys.sk == "ENTITY#observation#p1:718-7:2025-09-30T10:00:00Z"
        assert keys.gsi1pk == keys.sk
        assert keys.gsi1sk == keys.pk


class TestFormatRouting:
    """Closed set of format variants."""

    @pytest.mark.parametrize("content_type,key,expected", [
        ("text/csv", None, SourceFormat.CSV),
        ("text/csv; charset=utf-8", None, SourceFormat.CSV),
        (None, "raw/t/labs.csv", SourceFormat.CSV),
        (None, "raw/t/labs.CSV", SourceFormat.CSV),
        ("application/hl7-v2", None, SourceFormat.CLINICAL_MESSAGE),
        ("x-application/x-hl7", None, SourceFormat.CLINICAL_MESSAGE),
        ("text/plain", None, SourceFormat.CLINICAL_MESSAGE),
        (None, "raw/t/oru.HL7", SourceFormat.CLINICAL_MESSAGE),
        ("text/csv", "raw/t/oru.hl7", SourceFormat.CSV),
        ("application/json", "raw/t/a.json", SourceFormat.GENERIC),
        (None, "raw/t/a.json", SourceFormat.GENERIC),
        ("application/json", None, SourceFormat.GENERIC),
        (None, None, SourceFormat.GENERIC),
    ])
    def test_detect_format(self, content_type, key, expected):
        assert detect_format(content_type, key) is expected

    def test_requires_blob(self):
        assert SourceFormat.CSV.requires_blob
        assert SourceFormat.CLINICAL_MESSAGE.requires_blob
        assert not SourceFormat.GENERIC.requires_blob

    def test_metadata_content_type_wins_over_payload(self):
        envelope = raw(
            {"contentType": "text/csv", "blob": {"bucket": "raw", "key": "raw/t1/x.bin"}},
            contentType="application/hl7-v2",
        )

        assert resolve_format(envelope) is SourceFormat.CLINICAL_MESSAGE

    def test_payload_blob_reference_wins_over_metadata(self):
        envelope = raw(
            {"contentType": "text/csv", "blob": {"bucket": "raw", "key": "raw/t1/x.bin"}},
            blob={"bucket": "archive", "key": "raw/t1/y.hl7"},
        )

        assert blob_reference(envelope).key == "raw/t1/x.bin"
        assert resolve_format(envelope) is SourceFormat.CSV

    def test_payload_content_type_used_when_metadata_silent(self):
        envelope = raw({"contentType": "text/csv", "blob": {"bucket": "raw", "key": "raw/t1/x.bin"}})

        assert resolve_format(envelope) is SourceFormat.CSV

    def test_every_format_has_an_adapter(self):
        adapters = build_adapters()

        assert set(adapters) == set(SourceFormat)
        assert isinstance(adapters[SourceFormat.CSV], CSVIngester)
        assert isinstance(adapters[SourceFormat.CLINICAL_MESSAGE], HL7Ingester)
        assert isinstance(adapters[SourceFormat.GENERIC], JSONIngester)

    def test_metadata_declarations_used_when_payload_silent(self):
        envelope = raw({}, contentType="application/hl7-v2", blob={"bucket": "raw", "key": "raw/t1/m"})

        assert resolve_format(envelope) is SourceFormat.CLINICAL_MESSAGE
        assert blob_reference(envelope).bucket == "raw"

    def test_inline_payload_is_generic(self):
        assert resolve_format(raw({"studyInstanceUID": "1.2.3"})) is SourceFormat.GENERIC

    def test_incomplete_blob_reference_ignored(self):
        envelope = raw({"blob": {"bucket": "raw"}, "contentType": "text/csv"})

        assert blob_reference(envelope) is None
        assert resolve_format(envelope) is SourceFormat.CSV

    @pytest.mark.parametrize("key,expected", [
        ("raw/t/a.csv", "text/csv"),
        ("raw/t/a.HL7", "application/hl7-v2"),
        ("raw/t/a.json", "application/json"),
        ("raw/t/a.txt", "text/plain"),
        ("raw/t/noext", "text/plain"),
    ])
    def test_content_type_for_key(self, key, expected):
        assert content_type_for_key(key) == expected


class TestRecordLifecycle:
    """RECEIVED -> ... -> terminal states."""

    def test_happy_path(self):
        record = RecordLifecycle("r1", "normalize")

        for state in (RecordState.VALIDATING, RecordState.VALID, RecordState.TRANSFORMING, RecordState.EMITTED):
            record.advance(state)

        assert record.is_terminal
        assert record.history[0] is RecordState.RECEIVED
        assert record.history[-1] is RecordState.EMITTED

    def test_drop_passes_through_invalid(self):
        record = RecordLifecycle("r1", "normalize").advance(RecordState.VALIDATING)

        record.drop("missing unit")

        assert record.history[-2:] == [RecordState.INVALID, RecordState.DROPPED]
        assert record.reason == "missing unit"

    def test_fail_from_any_non_terminal_state(self):
        record = RecordLifecycle("r1", "persist").advance(RecordState.VALIDATING).advance(RecordState.VALID)

        record.fail("store down")

        assert record.state is RecordState.FAILED_FOR_REDELIVERY
        assert record.is_terminal

    def test_terminal_states_are_final(self):
        record = RecordLifecycle("r1", "normalize").advance(RecordState.VALIDATING).drop("bad")

        with pytest.raises(IllegalTransitionError):
            record.advance(RecordState.VALIDATING)
        with pytest.raises(IllegalTransitionError):
            record.fail("again")

    def test_cannot_skip_validation(self):
        with pytest.raises(IllegalTransitionError):
            RecordLifecycle("r1", "normalize").advance(RecordState.TRANSFORMING)

    def test_terminal_state_set(self):
        assert TERMINAL_STATES == {
            RecordState.EMITTED, RecordState.DROPPED, RecordState.FAILED_FOR_REDELIVERY,
        }


class TestErrorTaxonomy:
    """Dispositions and Result plumbing."""

    @pytest.mark.parametrize("error_class,disposition", [
        (EnvelopeValidationError, Disposition.REDELIVER),
        (RecordParseError, Disposition.DROP),
        (OutputValidationError, Disposition.DROP),
        (ConditionalWriteConflict, Disposition.REDELIVER),
        (TransientInfrastructureError, Disposition.REDELIVER),
        (BlobNotFoundError, Disposition.REDELIVER),
        (StoreError, Disposition.REDELIVER),
    ])
    def test_disposition(self, error_class, disposition):
        assert error_class.disposition is disposition

    def test_failure_result_carries_issues(self):
        error = RecordParseError("bad row", source="row:1", issues=[ValidationIssue("/unit", "Field required")])

        result = Result.failure_result(error)

        assert result.is_failure()
        assert result.error == "bad row"
        assert result.error_type == "RecordParseError"
        assert result.issues == [ValidationIssue("/unit", "Field required")]

    def test_success_result_has_no_issues(self):
        result = Result.success_result(42)

        assert result.is_success()
        assert result.value == 42
        assert result.issues == []

    def test_store_error_is_transient(self):
        error = StoreError("down", operation="get")

        assert isinstance(error, TransientInfrastructureError)
        assert error.operation == "get"
