"""Ingestion adapters for Clinical-ETL.

This module contains the format adapters that implement the IngestionPort
interface (CSV lab results, HL7 v2 messages, JSON passthrough) and the
registry that maps each routed SourceFormat to its adapter.
"""

from typing import Optional

from clinical_etl.adapters.ingesters.csv_ingester import CSVIngester
from clinical_etl.adapters.ingesters.hl7_ingester import HL7Ingester
from clinical_etl.adapters.ingesters.json_ingester import JSONIngester
from clinical_etl.domain.formats import SourceFormat
from clinical_etl.domain.ports import IngestionPort
from clinical_etl.domain.validators import Validators

__all__ = ["CSVIngester", "HL7Ingester", "JSONIngester", "build_adapters"]

_ADAPTER_CLASSES: dict[SourceFormat, type[IngestionPort]] = {
    SourceFormat.CSV: CSVIngester,
    SourceFormat.CLINICAL_MESSAGE: HL7Ingester,
    SourceFormat.GENERIC: JSONIngester,
}


def build_adapters(validators: Optional[Validators] = None) -> dict[SourceFormat, IngestionPort]:
    """Instantiate one adapter per format variant.

    Every SourceFormat member has exactly one adapter; a missing entry is a
    programming error and fails here rather than at routing time.
    """
    missing = set(SourceFormat) - set(_ADAPTER_CLASSES)
    if missing:
        raise RuntimeError(f"No adapter registered for: {sorted(fmt.value for fmt in missing)}")
    return {fmt: adapter_class(validators=validators) for fmt, adapter_class in _ADAPTER_CLASSES.items()}

