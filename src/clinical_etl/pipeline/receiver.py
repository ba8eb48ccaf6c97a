"""Ingest Receiver.

Accepts raw payloads, stores them as blobs and emits the initial
``ingest.raw.v1`` envelope that feeds normalization.

Two entry points:
    - ``receive(body)``: a structured JSON request ``{metadata?, payload?}``;
      the canonical JSON body is stored under
      ``raw/<tenant>/<YYYY-MM-DD>/<uuid>.json`` and its payload sent inline
    - ``receive_file(...)``: a CSV/HL7/JSON document; the bytes are stored
      and the envelope carries a blob reference plus content type

``build_reprocess_envelope`` prepares an envelope for a blob that is
already stored, without reading it.
"""

import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Callable, Optional

from clinical_etl.domain.formats import content_type_for_key
from clinical_etl.domain.models import RAW_SCHEMA, RawEnvelope, utc_now_iso
from clinical_etl.domain.ports import BlobStorePort, MessageChannelPort, PipelineError, TransientInfrastructureError
from clinical_etl.domain.validators import Validators, get_validators
from clinical_etl.infrastructure.audit import AuditNotifier
from clinical_etl.infrastructure.metrics import PipelineMetrics

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass(frozen=True)
class IngestReceipt:
    """Acknowledgement returned to the submitter."""

    ok: bool
    key: str
    message_id: str
    message: dict[str, Any]

    def to_response(self) -> dict[str, Any]:
        return {"ok": self.ok, "key": self.key, "message": self.message}


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(body: Any) -> bytes:
    return json.dumps(body, separators=(',', ':'), ensure_ascii=False).encode("utf-8")


def build_reprocess_envelope(tenant_id: str, bucket: str, key: str, ingested_at: Optional[str] = None) -> dict:
    """Raw envelope for an already-stored blob (no content hash, not read).

    Raises:
        ValueError: If tenant, bucket or key is empty
    """
    if not all([tenant_id, bucket, key]):
        raise ValueError("tenantId, bucket, key are required")
    return {
        "schema": RAW_SCHEMA,
        "metadata": {
            "tenantId": tenant_id,
            "source": "reprocess",
            "ingestedAt": ingested_at or utc_now_iso(),
            "idempotencyKey": f"reproc:{key}",
        },
        "payload": {
            "blob": {"bucket": bucket, "key": key},
            "contentType": content_type_for_key(key),
        },
    }


class IngestReceiver:
    """Stores raw submissions and emits ``ingest.raw.v1`` envelopes.

    Parameters:
        blob_store: Destination of the raw blobs
        downstream: Raw-event channel
        audit: Best-effort audit notifier
        metrics: Counter/timer sink
        raw_bucket: Bucket receiving raw blobs
        validators: Process-wide validators (defaults to ``get_validators()``)
        clock: Returns the current UTC datetime
        id_factory: Returns a fresh ingest id
    """

    def __init__(
        self,
        blob_store: BlobStorePort,
        downstream: MessageChannelPort,
        audit: AuditNotifier,
        metrics: PipelineMetrics,
        raw_bucket: str = "raw",
        validators: Optional[Validators] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.blob_store = blob_store
        self.downstream = downstream
        self.audit = audit
        self.metrics = metrics
        self.raw_bucket = raw_bucket
        self.validators = validators or get_validators()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    async def receive(self, body: dict[str, Any]) -> IngestReceipt:
        """Accept one structured submission.

        Tenant and source default to ``unknown``; the idempotency key defaults
        to the generated ingest id; the payload is ``body.payload`` when
        present, else the whole body.

        Raises:
            EnvelopeValidationError: If the resulting envelope is malformed
            TransientInfrastructureError: If storing or emitting failed
        """
        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}
        ingest_id = self._id_factory()
        tenant_id = str(metadata.get("tenantId") or UNKNOWN)
        now = self._clock()

        content = canonical_json(body)
        digest = content_hash(content)
        key = f"raw/{tenant_id}/{now.date().isoformat()}/{ingest_id}.json"
        payload = body.get("payload")
        envelope = {
            "schema": RAW_SCHEMA,
            "metadata": {
                "tenantId": tenant_id,
                "source": str(metadata.get("source") or UNKNOWN),
                "ingestedAt": self._iso(now),
                "idempotencyKey": str(metadata.get("idempotencyKey") or ingest_id),
                "contentHash": digest,
            },
            "payload": payload if isinstance(payload, dict) else body,
        }
        return await self._store_and_emit(ingest_id, key, content, "application/json", digest, envelope)

    async def receive_file(
        self,
        data: bytes,
        filename: str,
        tenant_id: str,
        source: Optional[str] = None,
        content_type: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> IngestReceipt:
        """Accept one document; the envelope references the stored blob.

        Raises:
            ValueError: If the tenant is empty
            TransientInfrastructureError: If storing or emitting failed
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")
        ingest_id = self._id_factory()
        now = self._clock()
        suffix = PurePosixPath(filename).suffix.lower() or ".bin"
        key = f"raw/{tenant_id}/{now.date().isoformat()}/{ingest_id}{suffix}"
        declared_type = content_type or content_type_for_key(filename)
        digest = content_hash(data)
        envelope = {
            "schema": RAW_SCHEMA,
            "metadata": {
                "tenantId": tenant_id,
                "source": source or f"file:{PurePosixPath(filename).name}",
                "ingestedAt": self._iso(now),
                "idempotencyKey": idempotency_key or f"sha256:{digest}",
                "contentHash": digest,
            },
            "payload": {
                "blob": {"bucket": self.raw_bucket, "key": key},
                "contentType": declared_type,
            },
        }
        return await self._store_and_emit(ingest_id, key, data, declared_type, digest, envelope)

    async def _store_and_emit(
        self,
        ingest_id: str,
        key: str,
        content: bytes,
        content_type: str,
        digest: str,
        envelope: dict[str, Any]
    ) -> IngestReceipt:
        started = time.perf_counter()
        try:
            message: RawEnvelope = self.validators.envelope.require(RAW_SCHEMA, envelope, source=ingest_id)
            wire = message.to_wire()
            await self.blob_store.put(
                self.raw_bucket, key, content, content_type=content_type, metadata={"contentHash": digest}
            )
            message_id = await self.downstream.send(wire, {"schema": RAW_SCHEMA, "tenantId": message.metadata.tenant_id})
        except PipelineError as e:
            self.metrics.increment("ingest_error_count")
            logger.error(f"Ingest {ingest_id} failed: {str(e)}", exc_info=True)
            raise
        except (OSError, ValueError) as e:
            self.metrics.increment("ingest_error_count")
            logger.error(f"Ingest {ingest_id} failed: {str(e)}", exc_info=True)
            raise TransientInfrastructureError(f"Ingest failed: {str(e)}", source=ingest_id) from e

        self.audit.notify({
            "type": RAW_SCHEMA,
            "tenantId": message.metadata.tenant_id,
            "ingestId": ingest_id,
            "traceId": ingest_id,
            "blob": {"bucket": self.raw_bucket, "key": key},
        })
        self.metrics.increment("ingest_count")
        self.metrics.observe_ms("ingest_latency_ms", (time.perf_counter() - started) * 1000.0)
        logger.info(
            f"Ingested {key} for tenant {message.metadata.tenant_id}",
            extra={"tenant_id": message.metadata.tenant_id, "message_id": message_id},
        )
        return IngestReceipt(ok=True, key=key, message_id=message_id, message=wire)

    @staticmethod
    def _iso(moment: datetime) -> str:
        return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
