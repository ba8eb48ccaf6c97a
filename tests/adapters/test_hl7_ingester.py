"""Unit tests for the HL7 v2 adapter (PID + OBX subset).

Tests cover:
- One DTO per numeric OBX segment; non-numeric segments dropped
- PID-3 patient identifier extraction
- OBX-3 / OBX-6 component selection
- OBX-14 timestamp conversion and fallback
- Segment separators
"""

from datetime import datetime, timezone

import pytest

from clinical_etl.adapters.ingesters.hl7_ingester import HL7Ingester
from clinical_etl.domain.ports import AdapterContext


MSH = "MSH|^~\\&|LAB|FAC|EHR|FAC|20250930101500||ORU^R01|MSG0001|P|2.5"
PID = "PID|1||12345^^^HOSP^MR~99^^^ALT||Doe^Jane"


def obx(index, code, value, unit="g/dL", timestamp="20250930100000", value_type="NM"):
    fields = ["OBX", str(index), value_type, code, "", value, unit, "", "", "", "", "F", "", "", timestamp]
    return "|".join(fields)


def message(*segments, separator="\r"):
    return separator.join(segments).encode("utf-8")


FIXED_NOW = datetime(2025, 10, 1, 8, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def ingester():
    return HL7Ingester(clock=lambda: FIXED_NOW)


@pytest.fixture
def context():
    return AdapterContext(tenant_id="tenant-a")


class TestHL7Observations:
    """OBX segment handling."""

    def test_non_numeric_segment_dropped_siblings_parsed(self, ingester, context):
        """A text-valued OBX yields no DTO; the numeric siblings still parse."""
        buffer = message(
            MSH,
            PID,
            obx(1, "718-7^Hemoglobin^LN", "13.5"),
            obx(2, "5778-6^Color^LN", "yellow", unit="", value_type="ST"),
            obx(3, "2345-7^Glucose^LN", "5.4", unit="mmol/L"),
        )

        results = list(ingester.iter_results(buffer, context))

        assert [r.is_success() for r in results] == [True, False, True]
        assert results[1].error_type == "RecordParseError"
        assert [r.value.code for r in results if r.is_success()] == ["718-7", "2345-7"]

    def test_dto_fields(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "718-7^Hemoglobin^LN", "13.5"))

        dto = ingester.parse(buffer, context)[0]

        assert dto.patient_id == "12345"
        assert dto.code == "718-7"
        assert dto.value == 13.5
        assert dto.unit == "g/dL"
        assert dto.effective_date_time == "2025-09-30T10:00:00Z"
        assert dto.source_system == "hl7v2:file"
        assert dto.ingest_hash.startswith("sha256:")

    def test_non_finite_value_dropped(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "718-7", "NaN"), obx(2, "718-7", "12"))

        results = list(ingester.iter_results(buffer, context))

        assert [r.is_success() for r in results] == [False, True]

    def test_non_obx_segments_ignored(self, ingester, context):
        buffer = message(MSH, PID, "ORC|RE|1", obx(1, "718-7", "13.5"), "NTE|1||comment")

        assert len(list(ingester.iter_results(buffer, context))) == 1

    def test_each_segment_hashed_separately(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "718-7", "13.5"), obx(2, "718-7", "13.6"))

        first, second = ingester.parse(buffer, context)

        assert first.ingest_hash != second.ingest_hash

    def test_context_source_system(self, ingester):
        buffer = message(MSH, PID, obx(1, "718-7", "13.5"))
        context = AdapterContext(tenant_id="tenant-a", source_system="hl7v2:lab-b")

        assert ingester.parse(buffer, context)[0].source_system == "hl7v2:lab-b"

    def test_invalid_calendar_timestamp_drops_segment(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "718-7", "13.5", timestamp="20251399"))

        results = list(ingester.iter_results(buffer, context))

        assert results[0].is_failure()


class TestHL7Components:
    """PID-3, OBX-3 and OBX-6 component selection."""

    def test_patient_id_falls_back_to_second_component(self, ingester, context):
        buffer = message(MSH, "PID|1||^ALT-7^^HOSP", obx(1, "718-7", "13.5"))

        assert ingester.parse(buffer, context)[0].patient_id == "ALT-7"

    def test_missing_pid_yields_unknown_patient(self, ingester, context):
        buffer = message(MSH, obx(1, "718-7", "13.5"))

        assert ingester.parse(buffer, context)[0].patient_id == "unknown"

    def test_extract_patient_id_uses_first_repetition(self):
        assert HL7Ingester.extract_patient_id([MSH, PID]) == "12345"

    def test_code_falls_back_to_text_component(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "^Hemoglobin", "13.5"))

        assert ingester.parse(buffer, context)[0].code == "Hemoglobin"

    def test_unit_prefers_second_component(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "2345-7", "5.4", unit="mmol/L^millimoles per litre"))

        assert ingester.parse(buffer, context)[0].unit == "millimoles per litre"

    def test_unit_defaults_to_one(self, ingester, context):
        buffer = message(MSH, PID, obx(1, "2345-7", "5.4", unit=""))

        assert ingester.parse(buffer, context)[0].unit == "1"


class TestHL7Timestamps:
    """OBX-14 conversion."""

    @pytest.mark.parametrize("timestamp,expected", [
        ("20250930101530", "2025-09-30T10:15:30Z"),
        ("202509301015", "2025-09-30T10:15:00Z"),
        ("2025093010", "2025-09-30T10:00:00Z"),
        ("20250930", "2025-09-30T00:00:00Z"),
        ("202509", "2025-09-01T00:00:00Z"),
        ("2025", "2025-01-01T00:00:00Z"),
        ("20250930101530.123+0200", "2025-09-30T10:15:30Z"),
    ])
    def test_to_iso(self, ingester, timestamp, expected):
        assert ingester.to_iso(timestamp) == expected

    @pytest.mark.parametrize("timestamp", ["", "not-a-date"])
    def test_unusable_timestamp_falls_back_to_now(self, ingester, timestamp):
        assert ingester.to_iso(timestamp) == "2025-10-01T08:30:00Z"


class TestHL7Segments:
    """Segment splitting."""

    @pytest.mark.parametrize("separator", ["\r", "\n", "\r\n"])
    def test_segment_separators(self, ingester, context, separator):
        buffer = message(MSH, PID, obx(1, "718-7", "13.5"), obx(2, "718-7", "14"), separator=separator)

        assert len(ingester.parse(buffer, context)) == 2

    def test_split_segments_drops_empty_lines(self):
        segments = HL7Ingester.split_segments(b"MSH|a\r\n\r\nPID|1\n")

        assert segments == ["MSH|a", "PID|1"]
