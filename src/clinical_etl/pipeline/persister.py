"""Persistence Engine.

Consumes ``etl.normalized.v1`` events and applies one conditional versioned
write per event to the keyed store:

    PK = TENANT#<tenant>            SK = ENTITY#<type>#<id>
    GSI1PK = ENTITY#<type>#<id>     GSI1SK = TENANT#<tenant>

The write is accepted when no idempotency key is stored yet or the stored
key differs from the incoming one; the version becomes stored + 1. On
success an ``etl.persisted.v1`` confirmation is emitted and a best-effort
audit notification fired.

An exact re-delivery (stored key == incoming key) is handled according to
the configured ReplayPolicy: NOOP reports success with the version
unchanged and re-emits the confirmation; REJECT surfaces the conflict so
the item is redelivered and eventually dead-lettered.

Architecture:
    - The store's conditional write is the only concurrency control
    - Store calls are synchronous drivers, run in a worker thread
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from clinical_etl.domain.lifecycle import RecordLifecycle, RecordState
from clinical_etl.domain.models import (
    NORMALIZED_SCHEMA,
    PERSISTED_SCHEMA,
    EntityKeys,
    NormalizedEventEnvelope,
    PersistedConfirmationEvent,
    utc_now_iso,
)
from clinical_etl.domain.ports import (
    ConditionalWriteConflict,
    KeyedStorePort,
    MessageChannelPort,
    PipelineError,
    TransientInfrastructureError,
    UpsertOutcome,
    UpsertRequest,
)
from clinical_etl.domain.validators import Validators, get_validators
from clinical_etl.infrastructure.audit import AuditNotifier
from clinical_etl.infrastructure.channels import ChannelMessage
from clinical_etl.infrastructure.metrics import PipelineMetrics
from clinical_etl.infrastructure.settings import ReplayPolicy
from clinical_etl.pipeline.batch import BatchReport, run_batch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistResult:
    """Outcome of one accepted (or replayed) write."""

    keys: EntityKeys
    version: Optional[int]
    duplicate: bool = False
    created: bool = False


class PersistenceEngine:
    """Normalized events -> keyed store, with per-item failure isolation.

    Parameters:
        store: Keyed store with the conditional versioned write
        downstream: Channel receiving ``etl.persisted.v1`` events
        audit: Best-effort audit notifier
        metrics: Counter/timer sink
        validators: Process-wide validators (defaults to ``get_validators()``)
        replay_policy: Handling of an exact idempotency-key re-delivery
        budget_seconds: Wall-clock budget of one batch
        clock: Returns the ``updatedAt``/``persistedAt`` timestamp
    """

    def __init__(
        self,
        store: KeyedStorePort,
        downstream: MessageChannelPort,
        audit: AuditNotifier,
        metrics: PipelineMetrics,
        validators: Optional[Validators] = None,
        replay_policy: ReplayPolicy = ReplayPolicy.NOOP,
        budget_seconds: Optional[float] = 30.0,
        clock: Optional[Callable[[], str]] = None
    ):
        self.store = store
        self.downstream = downstream
        self.audit = audit
        self.metrics = metrics
        self.validators = validators or get_validators()
        self.replay_policy = ReplayPolicy(replay_policy)
        self.budget_seconds = budget_seconds
        self._clock = clock or utc_now_iso

    async def handle_batch(self, messages: Iterable[ChannelMessage]) -> BatchReport:
        return await run_batch(messages, self.handle_message, self.budget_seconds)

    async def handle_message(self, message: ChannelMessage) -> PersistResult:
        """Persist one normalized event.

        Raises:
            EnvelopeValidationError: Malformed normalized event
            ConditionalWriteConflict: Lost race, or a re-delivery under REJECT
            TransientInfrastructureError: Store or channel failure
        """
        record = RecordLifecycle(message.message_id, "persist")
        started = time.perf_counter()
        try:
            result = await self._persist(message, record)
        except PipelineError as e:
            self.metrics.increment("persist_error_count")
            if not record.is_terminal:
                record.fail(str(e))
            raise
        self.metrics.increment("persist_success_count")
        self.metrics.observe_ms("persist_time_ms", (time.perf_counter() - started) * 1000.0)
        return result

    async def _persist(self, message: ChannelMessage, record: RecordLifecycle) -> PersistResult:
        record.advance(RecordState.VALIDATING)
        event: NormalizedEventEnvelope = self.validators.envelope.require(
            NORMALIZED_SCHEMA, message.body, source=message.message_id
        )
        record.advance(RecordState.VALID)

        keys = EntityKeys.for_envelope(event)
        now = self._clock()
        request = UpsertRequest(
            keys=keys,
            tenant_id=event.metadata.tenant_id,
            entity_type=event.data.entity_type,
            entity_id=event.data.entity_id,
            attributes=event.data.attributes,
            idempotency_key=event.metadata.idempotency_key,
            updated_at=now,
        )

        record.advance(RecordState.TRANSFORMING)
        duplicate = False
        try:
            outcome: UpsertOutcome = await asyncio.to_thread(self.store.conditional_upsert, request)
        except ConditionalWriteConflict as conflict:
            if not (conflict.duplicate and self.replay_policy is ReplayPolicy.NOOP):
                raise
            duplicate = True
            outcome = UpsertOutcome(version=conflict.current_version)
            self.metrics.increment("persist_duplicate_count")
            logger.info(
                f"Re-delivery of {request.idempotency_key} for {keys.sk} ignored; "
                f"version stays {conflict.current_version}",
                extra={"message_id": message.message_id, "idempotency_key": request.idempotency_key},
            )

        confirmation = self._build_confirmation(event, keys, outcome.version, now)
        await self._emit(confirmation, message.message_id)
        record.advance(RecordState.EMITTED)

        self.audit.notify({
            "type": PERSISTED_SCHEMA,
            "tenantId": event.metadata.tenant_id,
            "traceId": event.metadata.trace_id,
            "ddb": {"pk": keys.pk, "sk": keys.sk, "version": outcome.version},
        })
        logger.debug(
            f"Persisted {keys.pk}/{keys.sk} at version {outcome.version}",
            extra={"message_id": message.message_id, "tenant_id": event.metadata.tenant_id,
                   "trace_id": event.metadata.trace_id, "version": outcome.version},
        )
        return PersistResult(keys=keys, version=outcome.version, duplicate=duplicate, created=outcome.created)

    def _build_confirmation(
        self,
        event: NormalizedEventEnvelope,
        keys: EntityKeys,
        version: Optional[int],
        persisted_at: str
    ) -> PersistedConfirmationEvent:
        body: dict[str, Any] = {
            "schema": PERSISTED_SCHEMA,
            "metadata": {
                "tenantId": event.metadata.tenant_id,
                "persistedAt": persisted_at,
                "traceId": event.metadata.trace_id,
            },
            "record": {
                "pk": keys.pk,
                "sk": keys.sk,
                "gsi1pk": keys.gsi1pk,
                "gsi1sk": keys.gsi1sk,
                "entityType": event.data.entity_type,
                "entityId": event.data.entity_id,
                "attributes": event.data.attributes,
            },
        }
        if version is not None:
            body["record"]["version"] = version
        return self.validators.envelope.require(PERSISTED_SCHEMA, body, source=keys.sk)

    async def _emit(self, confirmation: PersistedConfirmationEvent, message_id: str) -> None:
        try:
            await self.downstream.send(
                confirmation.to_wire(),
                {"schema": PERSISTED_SCHEMA, "tenantId": confirmation.metadata.tenant_id},
            )
        except PipelineError:
            raise
        except Exception as e:
            raise TransientInfrastructureError(
                f"Failed to emit persisted event: {str(e)}", source=message_id
            ) from e
