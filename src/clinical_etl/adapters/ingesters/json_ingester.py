"""JSON Passthrough Ingestion Adapter.

Used when an envelope carries no CSV/HL7 file reference. The inline payload
(or a referenced JSON blob) is treated as already-structured records that
need only light coercion before DTO validation:

    - string fields are trimmed; numeric strings become numbers
    - ``schemaVersion`` defaults to 1
    - ``sourceSystem`` defaults to the context label
    - ``ingestHash`` defaults to the SHA-256 of the record's canonical JSON

Records that do not look like observations (no ``patientId``/``code``/``value``)
are not DTO candidates; the orchestrator forwards them as generic entities.
"""

import hashlib
import json
import logging
import math
from typing import Any, Iterator, Optional, Union

from clinical_etl.domain.models import CanonicalObservation
from clinical_etl.domain.ports import (
    AdapterContext,
    IngestionPort,
    RecordParseError,
    Result,
    UnsupportedFormatError,
)
from clinical_etl.domain.validators import Validators, get_validators

logger = logging.getLogger(__name__)

OBSERVATION_KEYS = frozenset({"patientId", "code", "value"})
_STRING_FIELDS = ("patientId", "code", "unit", "effectiveDateTime", "sourceSystem", "ingestHash")


class JSONIngester(IngestionPort):
    """Passthrough adapter for inline or JSON-blob payloads.

    Parameters:
        validators: Pre-compiled validators (defaults to the process-wide set)
    """

    default_source_system = "json:inline"

    def __init__(self, validators: Optional[Validators] = None):
        self.adapter_name = "json_ingester"
        self._validators = validators or get_validators()

    @staticmethod
    def is_observation_candidate(record: Any) -> bool:
        return isinstance(record, dict) and OBSERVATION_KEYS.issubset(record)

    @staticmethod
    def extract_records(raw_data: Any) -> list:
        """Extract records from the supported JSON structures.

        Handles:
        - Array of records: [{...}, {...}]
        - Wrapped raw body: {"metadata": {...}, "payload": {...}}
        - Dict with "records" key: {"records": [{...}]}
        - Single record: {...}

        Raises:
            UnsupportedFormatError: If the JSON is neither an object nor an array
        """
        if isinstance(raw_data, list):
            return raw_data
        if isinstance(raw_data, dict):
            if isinstance(raw_data.get("payload"), (dict, list)):
                return JSONIngester.extract_records(raw_data["payload"])
            if isinstance(raw_data.get("records"), list):
                return raw_data["records"]
            return [raw_data]
        raise UnsupportedFormatError(
            f"Unsupported JSON structure: expected array or object, got {type(raw_data).__name__}",
            source="json_ingester",
        )

    def load(self, buffer: Union[bytes, str]) -> list:
        try:
            return self.extract_records(json.loads(buffer))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UnsupportedFormatError(f"Invalid JSON: {str(e)}", source=self.adapter_name) from e

    def iter_results(self, buffer: bytes, context: AdapterContext) -> Iterator[Result[CanonicalObservation]]:
        for index, record in enumerate(self.load(buffer), start=1):
            yield self.coerce(record, context, index)

    def coerce(self, record: Any, context: AdapterContext, index: int = 1) -> Result[CanonicalObservation]:
        """Lightly coerce one structured record and validate it as a DTO."""
        if not isinstance(record, dict):
            error = RecordParseError(f"Record {index}: expected an object, got {type(record).__name__}",
                                     source=f"record:{index}")
            logger.warning(f"JSON record dropped: {error}")
            return Result.failure_result(error)

        candidate = dict(record)
        for name in _STRING_FIELDS:
            if isinstance(candidate.get(name), str):
                candidate[name] = candidate[name].strip()
            elif isinstance(candidate.get(name), (int, float)) and not isinstance(candidate.get(name), bool):
                candidate[name] = str(candidate[name])
        candidate["value"] = self._coerce_number(candidate.get("value"))
        candidate.setdefault("schemaVersion", 1)
        candidate.setdefault("sourceSystem", self.source_system(context))
        candidate.setdefault("ingestHash", self._generate_hash(record))

        result = self._validators.dto.validate(candidate)
        if result.is_failure():
            error = RecordParseError(f"Record {index}: {result.error}", source=f"record:{index}",
                                     issues=result.issues)
            logger.warning(f"JSON record dropped: {error}")
            return Result.failure_result(error)
        return result

    @staticmethod
    def _coerce_number(value: Any) -> Any:
        if isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                return value
            return number if math.isfinite(number) else value
        return value

    @staticmethod
    def _generate_hash(record: dict) -> str:
        record_str = json.dumps(record, sort_keys=True, separators=(',', ':'), default=str)
        return "sha256:" + hashlib.sha256(record_str.encode('utf-8')).hexdigest()
