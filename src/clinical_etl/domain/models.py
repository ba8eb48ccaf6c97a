"""Canonical Record and Envelope Models.

This module defines the canonical data shapes that flow through the pipeline:
the observation DTO every source format is normalized into, the three event
envelopes exchanged between stages, and the stored record owned by the
persistence engine.

Security Impact:
    - Every envelope crossing a stage boundary is validated against these models
    - Tenant identity is mandatory on every envelope and every stored record
    - Type safety enforced at runtime via Pydantic V2

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Wire shapes use camelCase aliases; Python attributes use snake_case
    - Models are immutable (frozen) once validated
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

RAW_SCHEMA = "ingest.raw.v1"
NORMALIZED_SCHEMA = "etl.normalized.v1"
PERSISTED_SCHEMA = "etl.persisted.v1"

EntityType = Literal["observation", "study", "patient"]

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_ISO_DATETIME = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})$"
)


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 timestamp carrying an explicit UTC designator or offset.

    Parameters:
        value: Timestamp string, e.g. ``2025-09-30T10:00:00Z``

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: If the value is not a full ISO-8601 date-time with offset
    """
    if not isinstance(value, str) or not _ISO_DATETIME.match(value):
        raise ValueError(f"must be an ISO-8601 date-time with offset, got {value!r}")
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def utc_now_iso() -> str:
    """Current UTC time in the ``YYYY-MM-DDTHH:MM:SS.mmmZ`` wire format."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WireModel(BaseModel):
    """Base for all models exchanged on the wire (camelCase aliases, frozen)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump to the JSON-compatible wire shape (aliases, no null optionals).

        Only unset optional *fields* are omitted; ``None`` values inside free-form
        attribute dicts are kept as sent.
        """
        data = self.model_dump(by_alias=True, mode="json")
        for name, info in type(self).model_fields.items():
            key = info.serialization_alias or info.alias or name
            value = getattr(self, name)
            if value is None:
                data.pop(key, None)
            elif isinstance(value, WireModel):
                data[key] = value.to_wire()
        return data


# ============================================================================
# Canonical Observation DTO
# ============================================================================

class CanonicalObservation(WireModel):
    """Canonical observation DTO all source formats are normalized into.

    Produced transiently by format adapters and consumed immediately by the
    mapper and validators; it is never persisted directly.

    Parameters:
        schema_version: Always 1
        patient_id: Subject identifier (non-empty)
        code: Observation code, e.g. LOINC ``718-7`` (non-empty)
        value: Finite numeric value (strings are rejected)
        unit: Unit of measure (non-empty)
        effective_date_time: ISO-8601 timestamp with offset
        source_system: Label of the producing feed, e.g. ``csv:labx``
        ingest_hash: ``sha256:<hex>`` hash of the raw row or segment
    """

    schema_version: Literal[1]
    patient_id: NonEmptyStr
    code: NonEmptyStr
    value: float = Field(..., strict=True, allow_inf_nan=False)
    unit: NonEmptyStr
    effective_date_time: NonEmptyStr
    source_system: NonEmptyStr
    ingest_hash: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10)]

    @field_validator("effective_date_time")
    @classmethod
    def validate_effective_date_time(cls, v: str) -> str:
        parse_iso_datetime(v)
        return v

    @property
    def entity_id(self) -> str:
        """Stable entity identity of this observation."""
        return f"{self.patient_id}:{self.code}:{self.effective_date_time}"


# ============================================================================
# Envelopes
# ============================================================================

class BlobReference(WireModel):
    """Reference to a stored blob (bucket + key)."""

    bucket: NonEmptyStr
    key: NonEmptyStr


class RawMetadata(WireModel):
    """Metadata block of ``ingest.raw.v1``.

    ``content_hash`` is absent on envelopes built for reprocessing an already
    stored blob. Content type and blob reference may be declared here or in
    the payload; unknown keys are preserved.
    """

    model_config = ConfigDict(extra="allow")

    tenant_id: NonEmptyStr
    source: NonEmptyStr
    ingested_at: NonEmptyStr
    idempotency_key: NonEmptyStr
    content_hash: Optional[str] = None
    content_type: Optional[str] = None
    blob: Optional[BlobReference] = Field(
        None, alias="blob", validation_alias=AliasChoices("blob", "s3")
    )

    @field_validator("ingested_at")
    @classmethod
    def validate_ingested_at(cls, v: str) -> str:
        parse_iso_datetime(v)
        return v


class RawEnvelope(WireModel):
    """``ingest.raw.v1``: emitted by the ingest receiver, consumed by normalization."""

    schema_name: Literal["ingest.raw.v1"] = Field(RAW_SCHEMA, alias="schema")
    metadata: RawMetadata
    payload: dict[str, Any]


class NormalizedMetadata(WireModel):
    tenant_id: NonEmptyStr
    source: NonEmptyStr
    normalized_at: NonEmptyStr
    idempotency_key: NonEmptyStr
    trace_id: NonEmptyStr

    @field_validator("normalized_at")
    @classmethod
    def validate_normalized_at(cls, v: str) -> str:
        parse_iso_datetime(v)
        return v


class NormalizedData(WireModel):
    entity_type: EntityType
    entity_id: NonEmptyStr
    patient_id: Optional[str] = None
    modality: Optional[str] = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class NormalizedEventEnvelope(WireModel):
    """``etl.normalized.v1``: one per surviving record, consumed by persistence.

    ``trace_id`` is generated fresh per emitted record and is not a dedup key;
    ``idempotency_key`` is carried over from the raw envelope.
    """

    schema_name: Literal["etl.normalized.v1"] = Field(NORMALIZED_SCHEMA, alias="schema")
    metadata: NormalizedMetadata
    data: NormalizedData


class PersistedMetadata(WireModel):
    tenant_id: NonEmptyStr
    persisted_at: NonEmptyStr
    trace_id: NonEmptyStr


class PersistedRecordBody(WireModel):
    pk: NonEmptyStr
    sk: NonEmptyStr
    gsi1pk: NonEmptyStr
    gsi1sk: NonEmptyStr
    entity_type: EntityType
    entity_id: NonEmptyStr
    attributes: dict[str, Any] = Field(default_factory=dict)
    version: Optional[int] = Field(None, ge=1)


class PersistedConfirmationEvent(WireModel):
    """``etl.persisted.v1``: one per successful write, for audit/indexing consumers."""

    schema_name: Literal["etl.persisted.v1"] = Field(PERSISTED_SCHEMA, alias="schema")
    metadata: PersistedMetadata
    record: PersistedRecordBody


# ============================================================================
# Stored Record
# ============================================================================

@dataclass(frozen=True)
class EntityKeys:
    """Composite keys of a stored entity.

    The primary key is ``(pk, sk)`` = ``(TENANT#<tenant>, ENTITY#<type>#<id>)``;
    the inverse key ``(gsi1pk, gsi1sk)`` supports cross-tenant entity lookup.
    """

    pk: str
    sk: str
    gsi1pk: str
    gsi1sk: str

    @classmethod
    def for_entity(cls, tenant_id: str, entity_type: str, entity_id: str) -> "EntityKeys":
        entity_key = f"ENTITY#{entity_type}#{entity_id}"
        tenant_key = f"TENANT#{tenant_id}"
        return cls(pk=tenant_key, sk=entity_key, gsi1pk=entity_key, gsi1sk=tenant_key)

    @classmethod
    def for_envelope(cls, envelope: NormalizedEventEnvelope) -> "EntityKeys":
        return cls.for_entity(
            envelope.metadata.tenant_id,
            envelope.data.entity_type,
            envelope.data.entity_id,
        )


class PersistedRecord(BaseModel):
    """A record as held by the keyed store.

    Created on first successful write and mutated (version incremented) on
    every accepted subsequent write. Only the persistence engine mutates it.
    """

    model_config = ConfigDict(frozen=True)

    pk: str
    sk: str
    gsi1pk: str
    gsi1sk: str
    tenant_id: str
    entity_type: str
    entity_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(..., ge=1)
    updated_at: str
    idempotency_key: Optional[str] = None
