"""Source format routing.

A raw envelope is routed to exactly one variant of a closed set of formats
{CSV, CLINICAL_MESSAGE, GENERIC}. The content type and blob reference may be
declared in the payload or in the metadata. A metadata content type wins over
the payload one; a payload blob reference wins over the metadata one.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from clinical_etl.domain.models import BlobReference, RawEnvelope


class SourceFormat(str, Enum):
    CSV = "csv"
    CLINICAL_MESSAGE = "hl7v2"
    GENERIC = "generic"

    @property
    def requires_blob(self) -> bool:
        return self is not SourceFormat.GENERIC


def detect_format(content_type: Optional[str], key: Optional[str]) -> SourceFormat:
    """Pick the format variant for a declared content type and/or blob key.

    CSV wins over HL7 v2 when both match; anything unrecognised is GENERIC.
    """
    ct = (content_type or "").lower()
    name = (key or "").lower()
    if "text/csv" in ct or name.endswith(".csv"):
        return SourceFormat.CSV
    if name.endswith(".hl7") or "hl7" in ct or "text/plain" in ct:
        return SourceFormat.CLINICAL_MESSAGE
    return SourceFormat.GENERIC


def declared_content_type(envelope: RawEnvelope) -> Optional[str]:
    if envelope.metadata.content_type:
        return envelope.metadata.content_type
    value = envelope.payload.get("contentType")
    return value if isinstance(value, str) and value else None


def blob_reference(envelope: RawEnvelope) -> Optional[BlobReference]:
    """Blob reference declared by the envelope, if any (``blob`` or legacy ``s3``)."""
    for name in ("blob", "s3"):
        candidate: Any = envelope.payload.get(name)
        if isinstance(candidate, dict):
            try:
                return BlobReference.model_validate(candidate)
            except PydanticValidationError:
                return None
    return envelope.metadata.blob


def resolve_format(envelope: RawEnvelope) -> SourceFormat:
    reference = blob_reference(envelope)
    return detect_format(declared_content_type(envelope), reference.key if reference else None)


def content_type_for_key(key: str) -> str:
    """Content type inferred from a blob key's extension."""
    extension = key.lower().rsplit(".", 1)[-1] if "." in key else ""
    return {
        "csv": "text/csv",
        "hl7": "application/hl7-v2",
        "json": "application/json",
    }.get(extension, "text/plain")
