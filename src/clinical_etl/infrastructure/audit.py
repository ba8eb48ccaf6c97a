"""Audit Notifier.

Fire-and-forget dispatch of lean audit payloads to an optional sink. A
notification never blocks the caller and never fails the record it
describes: timeouts and sink errors are logged at WARNING and swallowed.

Architecture:
    - ``notify`` schedules a task on the running loop and returns immediately
    - Each delivery is bounded by its own timeout
    - ``drain`` awaits outstanding deliveries (shutdown, tests)
"""

import asyncio
import logging
from typing import Any, Optional

from clinical_etl.domain.ports import AuditSinkPort

logger = logging.getLogger(__name__)


class AuditNotifier:
    """Best-effort audit notifications.

    Parameters:
        sink: Audit sink; None disables notifications entirely
        timeout_seconds: Upper bound for one delivery
    """

    def __init__(self, sink: Optional[AuditSinkPort] = None, timeout_seconds: float = 2.0):
        self.sink = sink
        self.timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task] = set()
        self.delivered_count = 0
        self.failed_count = 0

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def notify(self, payload: dict[str, Any]) -> None:
        """Schedule delivery of one payload; returns without waiting."""
        if self.sink is None:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self.sink.deliver(payload), timeout=self.timeout_seconds)
            self.delivered_count += 1
        except asyncio.TimeoutError:
            self.failed_count += 1
            logger.warning(
                f"Audit notification timed out after {self.timeout_seconds}s: {payload.get('type')}",
                extra={"tenant_id": payload.get("tenantId"), "trace_id": payload.get("traceId")},
            )
        except Exception as e:
            self.failed_count += 1
            logger.warning(
                f"Audit notification failed: {payload.get('type')}: {str(e)}",
                extra={"tenant_id": payload.get("tenantId"), "trace_id": payload.get("traceId")},
            )

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class LoggingAuditSink(AuditSinkPort):
    """Audit sink that writes each payload to a dedicated logger."""

    def __init__(self, logger_name: str = "clinical_etl.audit"):
        self._audit_logger = logging.getLogger(logger_name)

    async def deliver(self, payload: dict[str, Any]) -> None:
        self._audit_logger.info(
            f"AUDIT {payload.get('type')}",
            extra={"extra_fields": {"audit": payload}},
        )


class MemoryAuditSink(AuditSinkPort):
    """Audit sink that keeps payloads in memory (local runs and tests)."""

    def __init__(self):
        self.payloads: list[dict[str, Any]] = []

    async def deliver(self, payload: dict[str, Any]) -> None:
        self.payloads.append(payload)
