"""Domain Ports - Abstract Contracts for the Record Pipeline.

This module defines the Port interfaces (abstract contracts) that adapters and
infrastructure collaborators must implement, the Result value object used at
port boundaries, and the pipeline error taxonomy.

Security Impact:
    - Format adapters may only yield validated CanonicalObservation objects
    - Every error carries a disposition so no failure is silently lost
    - Tenant identity flows through every store and channel contract

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (CSV, HL7 v2, JSON) and stores (DuckDB, PostgreSQL) implement these ports
    - Domain Core is isolated from transport and storage specifics
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Iterator, NamedTuple, Optional, Sequence, TypeVar, Union

from clinical_etl.domain.models import BlobReference, CanonicalObservation, EntityKeys, PersistedRecord

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Used where the caller must branch on the outcome of a single unit of work
    (one CSV row, one HL7 segment, one validator call) without unwinding the
    surrounding batch.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Type of error (RecordParseError, EnvelopeValidationError, etc.)
        error_details: Additional error context (source, row, issues, etc.)

    Example:
        ```python
        result = validators.dto.validate(candidate)
        if result.is_success():
            process(result.value)
        else:
            logger.warning(result.error, extra=result.error_details)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (defaults to the exception class name)
            error_details: Additional context (source, row index, issues, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        details = dict(error_details or {})
        if isinstance(error, PipelineError):
            details.setdefault("issues", list(error.issues))
            details.update({k: v for k, v in error.details.items() if k not in details})
        return cls(
            success=False,
            error=error_message,
            error_type=error_type_name,
            error_details=details
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    @property
    def issues(self) -> list['ValidationIssue']:
        """Structured ``(field-path, message)`` issues of a failed validation."""
        if self.success or not self.error_details:
            return []
        return list(self.error_details.get("issues", []))


class ValidationIssue(NamedTuple):
    """One validation problem: JSON-pointer-like field path plus message."""

    path: str
    message: str


# ============================================================================
# Error Taxonomy
# ============================================================================

class Disposition(str, Enum):
    """What the per-item boundary does with an error."""

    DROP = "drop"
    REDELIVER = "redeliver"


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Nothing in the pipeline is process-fatal: every PipelineError is caught at
    the per-item boundary and converted into a counted drop or a reported,
    redeliverable batch-item failure according to its ``disposition``.

    Attributes:
        source: Identifier of the failing input (message id, row, segment)
        issues: Structured ``(field-path, message)`` pairs, if any
        details: Additional error context
    """

    disposition: Disposition = Disposition.REDELIVER

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        issues: Optional[Sequence[ValidationIssue]] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message)
        self.source = source
        self.issues: tuple[ValidationIssue, ...] = tuple(issues or ())
        self.details = details or {}


class EnvelopeValidationError(PipelineError):
    """Malformed raw/normalized/persisted envelope; fails the whole item."""

    disposition = Disposition.REDELIVER


class RecordParseError(PipelineError):
    """A single CSV row or HL7 segment is malformed or uses an unsupported value type."""

    disposition = Disposition.DROP


class OutputValidationError(PipelineError):
    """The mapped clinical resource fails its minimal profile."""

    disposition = Disposition.DROP


class ConditionalWriteConflict(PipelineError):
    """The idempotency-key condition was not satisfied on persistence.

    Attributes:
        duplicate: True when the stored idempotency key equals the incoming one
            (an exact re-delivery); False when a concurrent writer won the race
        current_version: Stored version at the time of the conflict, if known
    """

    disposition = Disposition.REDELIVER

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        duplicate: bool = False,
        current_version: Optional[int] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, source=source, details=details)
        self.duplicate = duplicate
        self.current_version = current_version


class TransientInfrastructureError(PipelineError):
    """A store, queue or blob call failed; the item is redelivered."""

    disposition = Disposition.REDELIVER


class BlobNotFoundError(TransientInfrastructureError):
    """The referenced blob does not exist (yet)."""


class StoreError(TransientInfrastructureError):
    """The keyed store failed an operation.

    Attributes:
        operation: Store operation that failed (connect, upsert, get, ...)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.operation = operation


class UnsupportedFormatError(PipelineError):
    """The declared content cannot be routed to any adapter."""

    disposition = Disposition.REDELIVER


# ============================================================================
# Format Adapter Port
# ============================================================================

@dataclass(frozen=True)
class AdapterContext:
    """Per-invocation context passed to format adapters.

    Attributes:
        tenant_id: Tenant the buffer belongs to
        source_system: Source-system label tagged onto every DTO (None = adapter default)
    """

    tenant_id: str
    source_system: Optional[str] = None


class IngestionPort(ABC):
    """Abstract contract for format adapters.

    An adapter is a pure parser: byte buffer in, ordered sequence of validated
    CanonicalObservation out. It is deterministic, restartable and performs no
    I/O. A row or segment that fails parsing or DTO validation is reported as a
    failure Result and never aborts its siblings.

    Example Usage:
        ```python
        adapter = CSVIngester()
        for result in adapter.iter_results(buffer, AdapterContext(tenant_id="demo")):
            if result.is_success():
                handle(result.value)
            else:
                dropped += 1
        ```
    """

    #: Source-system label used when the context does not override it
    default_source_system: str = "unknown"

    @abstractmethod
    def iter_results(self, buffer: bytes, context: AdapterContext) -> Iterator[Result[CanonicalObservation]]:
        """Parse the buffer and yield one Result per row/segment, in input order.

        Parameters:
            buffer: Raw bytes of the source document
            context: Tenant and source-system label

        Yields:
            Result[CanonicalObservation]: validated DTO, or a RecordParseError failure
        """

    def parse(self, buffer: bytes, context: AdapterContext) -> list[CanonicalObservation]:
        """Parse the buffer into the ordered list of DTOs that passed validation."""
        return [result.value for result in self.iter_results(buffer, context) if result.is_success()]

    def source_system(self, context: AdapterContext) -> str:
        return context.source_system or self.default_source_system


# ============================================================================
# Collaborator Ports
# ============================================================================

class BlobStorePort(ABC):
    """Blob store supporting retrieval by bucket/key reference."""

    @abstractmethod
    async def get(self, reference: BlobReference) -> bytes:
        """Fetch blob content.

        Raises:
            BlobNotFoundError: If the blob does not exist
            TransientInfrastructureError: On any other store failure
        """

    @abstractmethod
    async def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None
    ) -> BlobReference:
        """Store blob content and return its reference."""


class MessageChannelPort(ABC):
    """Outbound side of an at-least-once message channel."""

    @abstractmethod
    async def send(self, body: dict[str, Any], attributes: Optional[dict[str, str]] = None) -> str:
        """Enqueue one message and return its message id.

        Raises:
            TransientInfrastructureError: If the message could not be enqueued
        """


class AuditSinkPort(ABC):
    """Receiver of best-effort audit notifications."""

    @abstractmethod
    async def deliver(self, payload: dict[str, Any]) -> None:
        """Deliver one audit payload; failures are the notifier's concern."""


@dataclass(frozen=True)
class UpsertRequest:
    """One conditional write against the keyed store."""

    keys: EntityKeys
    tenant_id: str
    entity_type: str
    entity_id: str
    attributes: dict[str, Any]
    idempotency_key: str
    updated_at: str


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of an accepted conditional write.

    Attributes:
        version: Version of the record after the write
        created: True when the write created the record
    """

    version: int
    created: bool = False


class KeyedStorePort(ABC):
    """Keyed store with a single-item conditional update and an inverse-key index.

    The conditional update is the entire concurrency-control mechanism: it
    writes attributes, tenant, timestamp and idempotency key and increments
    the version, guarded by ``no stored idempotency key OR stored key differs``.
    """

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables and indexes if they do not exist."""

    @abstractmethod
    def conditional_upsert(self, request: UpsertRequest) -> UpsertOutcome:
        """Apply one conditional versioned write.

        Raises:
            ConditionalWriteConflict: If the idempotency-key condition fails or a
                concurrent writer won the race
            StoreError: On any other store failure
        """

    @abstractmethod
    def get(self, tenant_id: str, entity_type: str, entity_id: str) -> Optional[PersistedRecord]:
        """Fetch one record by primary key."""

    @abstractmethod
    def list_by_entity(self, entity_type: str, entity_id: str) -> list[PersistedRecord]:
        """Fetch every tenant's copy of an entity via the inverse key."""

    def close(self) -> None:
        """Release store resources."""


@dataclass
class ItemOutcome:
    """Outcome of one batch item, returned by its own task."""

    message_id: str
    succeeded: bool
    value: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: dict = field(default_factory=dict)
