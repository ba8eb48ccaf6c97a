"""Schema Validators.

Three independently compiled, stateless validators:

1. DTO validator - CanonicalObservation invariants (non-empty identifiers,
   numeric value, ISO date-time, minimum-length content hash).
2. Envelope validator - the raw / normalized / persisted envelope schemas,
   independent of the DTO shape.
3. Output-representation validator - a minimal FHIR Observation profile,
   decoupled from the internal DTO so the internal shape may evolve without
   invalidating the external contract.

Each validator is compiled once (Pydantic ``TypeAdapter``) and is safe for
concurrent use afterwards. A call returns ``Result`` holding either the
validated model or a list of ``ValidationIssue(path, message)``; the input
is never mutated.

Architecture:
    - Process-scoped immutable singletons via ``get_validators()``
    - Injected into the normalization orchestrator and persistence engine
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from clinical_etl.domain.models import (
    NORMALIZED_SCHEMA,
    PERSISTED_SCHEMA,
    RAW_SCHEMA,
    CanonicalObservation,
    NormalizedEventEnvelope,
    PersistedConfirmationEvent,
    RawEnvelope,
    parse_iso_datetime,
)
from clinical_etl.domain.ports import (
    EnvelopeValidationError,
    OutputValidationError,
    PipelineError,
    RecordParseError,
    Result,
    ValidationIssue,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def issues_from_pydantic(error: PydanticValidationError) -> list[ValidationIssue]:
    """Flatten a Pydantic error into ``(field-path, message)`` pairs."""
    issues = []
    for item in error.errors(include_url=False):
        path = "/" + "/".join(str(part) for part in item.get("loc", ()))
        issues.append(ValidationIssue(path=path, message=item.get("msg", "invalid")))
    return issues


class SchemaValidator(Generic[M]):
    """A pre-compiled validator for one model.

    Parameters:
        name: Schema name used in error messages
        model: Pydantic model the input must satisfy
        error_class: PipelineError subclass raised by ``require``
    """

    def __init__(self, name: str, model: type[M], error_class: type[PipelineError]):
        self.name = name
        self.model = model
        self.error_class = error_class
        self._adapter = TypeAdapter(model)

    def validate(self, data: Any) -> Result[M]:
        """Validate wire data (dict) or an existing model instance.

        Returns:
            Result[M]: the validated model, or a failure carrying ``issues``
        """
        if isinstance(data, self.model):
            data = data.model_dump(by_alias=True, mode="json")
        try:
            return Result.success_result(self._adapter.validate_python(data))
        except PydanticValidationError as e:
            issues = issues_from_pydantic(e)
            return Result.failure_result(
                self._summarize(issues),
                error_type=self.error_class.__name__,
                error_details={"schema": self.name, "issues": issues},
            )

    def require(self, data: Any, source: Optional[str] = None) -> M:
        """Validate and return the model, raising ``error_class`` on failure."""
        result = self.validate(data)
        if result.is_failure():
            raise self.error_class(result.error, source=source, issues=result.issues, details={"schema": self.name})
        return result.value

    def _summarize(self, issues: list[ValidationIssue]) -> str:
        joined = "; ".join(f"{issue.path} {issue.message}" for issue in issues)
        return f"Schema validation failed for {self.name}: {joined}"


class EnvelopeValidator:
    """Validator for the three envelope schemas, keyed by schema name."""

    def __init__(self):
        self._validators: dict[str, SchemaValidator] = {
            RAW_SCHEMA: SchemaValidator(RAW_SCHEMA, RawEnvelope, EnvelopeValidationError),
            NORMALIZED_SCHEMA: SchemaValidator(NORMALIZED_SCHEMA, NormalizedEventEnvelope, EnvelopeValidationError),
            PERSISTED_SCHEMA: SchemaValidator(PERSISTED_SCHEMA, PersistedConfirmationEvent, EnvelopeValidationError),
        }

    @property
    def schema_names(self) -> tuple[str, ...]:
        return tuple(self._validators)

    def _get(self, schema_name: str) -> SchemaValidator:
        try:
            return self._validators[schema_name]
        except KeyError:
            raise ValueError(f"Unknown envelope schema: {schema_name}") from None

    def validate(self, schema_name: str, data: Any) -> Result:
        return self._get(schema_name).validate(data)

    def require(self, schema_name: str, data: Any, source: Optional[str] = None):
        return self._get(schema_name).require(data, source=source)


# ============================================================================
# Minimal FHIR Observation profile (external contract)
# ============================================================================

_Text = Annotated[str, StringConstraints(min_length=1)]


class _Coding(BaseModel):
    model_config = ConfigDict(extra="allow")

    system: _Text
    code: _Text


class _CodeableConcept(BaseModel):
    model_config = ConfigDict(extra="allow")

    coding: list[_Coding] = Field(..., min_length=1)


class _Reference(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: Annotated[str, StringConstraints(pattern=r"^Patient/.+$")]


class _Quantity(BaseModel):
    model_config = ConfigDict(extra="allow")

    value: float = Field(..., strict=True, allow_inf_nan=False)
    unit: _Text
    system: Optional[_Text] = None
    code: Optional[_Text] = None


class ObservationProfile(BaseModel):
    """Minimal Observation.r4 profile the mapped resource must satisfy."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resource_type: Literal["Observation"] = Field(..., alias="resourceType")
    status: Literal["registered", "preliminary", "final", "amended", "corrected", "cancelled"]
    code: _CodeableConcept
    subject: _Reference
    effective_date_time: str = Field(..., alias="effectiveDateTime")
    value_quantity: _Quantity = Field(..., alias="valueQuantity")

    @field_validator("effective_date_time")
    @classmethod
    def validate_effective_date_time(cls, v: str) -> str:
        parse_iso_datetime(v)
        return v


@dataclass(frozen=True)
class Validators:
    """The three process-scoped validators, passed by injection."""

    dto: SchemaValidator[CanonicalObservation]
    envelope: EnvelopeValidator
    output: SchemaValidator[ObservationProfile]


def build_validators() -> Validators:
    """Compile a fresh set of validators."""
    return Validators(
        dto=SchemaValidator("NormalizedObservation", CanonicalObservation, RecordParseError),
        envelope=EnvelopeValidator(),
        output=SchemaValidator("Observation.r4.min", ObservationProfile, OutputValidationError),
    )


@lru_cache(maxsize=1)
def get_validators() -> Validators:
    """Process-wide validators, compiled on first use and never mutated."""
    logger.debug("Compiling schema validators")
    return build_validators()
