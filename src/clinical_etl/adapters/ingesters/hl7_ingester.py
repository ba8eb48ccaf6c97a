"""HL7 v2 Ingestion Adapter (PID + OBX subset).

This adapter implements the IngestionPort contract for pipe-delimited HL7 v2
messages. Only the minimal subset needed for lab observations is parsed:

    - PID-3 (first repetition, first non-empty of components 1-2) -> patientId
    - OBX-3 (first non-empty of components 1-2)                    -> code
    - OBX-5 numeric value                                          -> value
    - OBX-6 (component 2, else component 1, else "1")             -> unit
    - OBX-14 ``YYYYMMDD[HH[MM[SS]]]``                              -> effectiveDateTime

Non-numeric OBX-5 values (ST/TX/CE...) are not supported in this version; the
segment is dropped. A failure in one OBX segment drops only that segment.

Architecture:
    - Implements IngestionPort (Hexagonal Architecture)
    - Pure parser with an injectable clock for the OBX-14 fallback
"""

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from clinical_etl.domain.models import CanonicalObservation
from clinical_etl.domain.ports import AdapterContext, IngestionPort, RecordParseError, Result
from clinical_etl.domain.validators import Validators, get_validators

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
COMPONENT_SEPARATOR = "^"
REPETITION_SEPARATOR = "~"

_SEGMENT_SPLIT = re.compile(r"\r\n|\r|\n")
# HL7 TS: YYYYMMDDHHMMSS(.S)?(+/-ZZZZ)?; fraction and offset are ignored
_HL7_TIMESTAMP = re.compile(r"^(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?")


def _field(fields: List[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


def _components(value: str) -> List[str]:
    return value.split(COMPONENT_SEPARATOR)


def _first_non_empty(components: List[str], *positions: int) -> str:
    for position in positions:
        if position < len(components) and components[position].strip():
            return components[position].strip()
    return ""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HL7Ingester(IngestionPort):
    """Minimal HL7 v2 parser yielding one DTO candidate per OBX segment.

    Parameters:
        validators: Pre-compiled validators (defaults to the process-wide set)
        clock: Returns "now" for OBX segments without a usable timestamp
    """

    default_source_system = "hl7v2:file"

    def __init__(
        self,
        validators: Optional[Validators] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.adapter_name = "hl7_ingester"
        self._validators = validators or get_validators()
        self._clock = clock or _utc_now

    @staticmethod
    def split_segments(buffer: bytes) -> List[str]:
        """Split a message into non-empty segments on CR, LF or CRLF."""
        text = buffer.decode("utf-8", errors="replace")
        return [segment for segment in _SEGMENT_SPLIT.split(text) if segment]

    @staticmethod
    def extract_patient_id(segments: List[str]) -> str:
        """Patient id from the first PID segment, or ``""`` when absent."""
        for segment in segments:
            fields = segment.split(FIELD_SEPARATOR)
            if fields[0] == "PID":
                first_repetition = _field(fields, 3).split(REPETITION_SEPARATOR)[0]
                return _first_non_empty(_components(first_repetition), 0, 1)
        return ""

    def to_iso(self, timestamp: str) -> str:
        """Convert an HL7 TS to ``YYYY-MM-DDTHH:MM:SSZ``.

        Missing trailing components default to the start of the period
        (month/day -> 01, time -> 00). An empty or unparseable value falls
        back to the current UTC time.
        """
        match = _HL7_TIMESTAMP.match(timestamp) if timestamp else None
        if not match:
            return self._clock().astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        year, month, day, hour, minute, second = match.groups()
        return (
            f"{year}-{month or '01'}-{day or '01'}"
            f"T{hour or '00'}:{minute or '00'}:{second or '00'}Z"
        )

    def iter_results(self, buffer: bytes, context: AdapterContext) -> Iterator[Result[CanonicalObservation]]:
        """Yield one Result per OBX segment, in message order."""
        segments = self.split_segments(buffer)
        patient_id = self.extract_patient_id(segments)
        if not patient_id:
            logger.warning(f"HL7 message for tenant {context.tenant_id} has no PID-3 identifier")
        source_system = self.source_system(context)

        observation_index = 0
        for segment in segments:
            fields = segment.split(FIELD_SEPARATOR)
            if fields[0] != "OBX":
                continue
            observation_index += 1
            yield self._segment_to_result(segment, fields, observation_index, patient_id, source_system)

    def _segment_to_result(
        self,
        segment: str,
        fields: List[str],
        index: int,
        patient_id: str,
        source_system: str
    ) -> Result[CanonicalObservation]:
        raw_value = _field(fields, 5).strip()
        try:
            value = float(raw_value)
        except ValueError:
            error = RecordParseError(
                f"OBX {index}: value {raw_value!r} is not numeric",
                source=f"obx:{index}",
                details={"value_type": _field(fields, 2)},
            )
            logger.warning(f"HL7 segment dropped: {error}")
            return Result.failure_result(error)

        candidate = {
            "schemaVersion": 1,
            "patientId": patient_id or "unknown",
            "code": _first_non_empty(_components(_field(fields, 3)), 0, 1) or "unknown",
            "value": value,
            "unit": _first_non_empty(_components(_field(fields, 6)), 1, 0) or "1",
            "effectiveDateTime": self.to_iso(_field(fields, 14).strip()),
            "sourceSystem": source_system,
            "ingestHash": "sha256:" + hashlib.sha256(segment.encode("utf-8")).hexdigest(),
        }
        result = self._validators.dto.validate(candidate)
        if result.is_failure():
            error = RecordParseError(f"OBX {index}: {result.error}", source=f"obx:{index}", issues=result.issues)
            logger.warning(f"HL7 segment dropped: {error}")
            return Result.failure_result(error)
        return result
