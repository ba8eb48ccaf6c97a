"""Batch runner with per-item failure isolation.

A batch of messages is handled with one asyncio task per message. The
runner waits at most the batch budget; tasks still running at the deadline
are cancelled and reported as failures. A handler exception becomes a
failure for that message only and never escapes the runner, except that a
PipelineError with the DROP disposition is logged and counted as handled.

The report has the partial-batch-response shape of the delivery channel:
``{"batchItemFailures": [{"itemIdentifier": <message id>}]}``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from clinical_etl.domain.ports import Disposition, ItemOutcome, PipelineError
from clinical_etl.infrastructure.channels import ChannelMessage, InMemoryChannel

logger = logging.getLogger(__name__)

Handler = Callable[[ChannelMessage], Awaitable[Any]]


@dataclass
class BatchReport:
    """Outcome of one batch.

    Attributes:
        succeeded: Message ids handled without error
        batch_item_failures: Message ids to redeliver
        outcomes: Per-message outcome, keyed by message id
    """

    succeeded: list[str] = field(default_factory=list)
    batch_item_failures: list[str] = field(default_factory=list)
    outcomes: dict[str, ItemOutcome] = field(default_factory=dict)

    @property
    def failed_count(self) -> int:
        return len(self.batch_item_failures)

    def to_response(self) -> dict:
        return {"batchItemFailures": [{"itemIdentifier": mid} for mid in self.batch_item_failures]}


async def _run_item(message: ChannelMessage, handler: Handler) -> ItemOutcome:
    try:
        value = await handler(message)
        return ItemOutcome(message_id=message.message_id, succeeded=True, value=value)
    except asyncio.CancelledError:
        raise
    except PipelineError as e:
        if e.disposition is Disposition.DROP:
            logger.warning(
                f"Item {message.message_id} dropped: {type(e).__name__}: {str(e)}",
                extra={"message_id": message.message_id},
            )
            return ItemOutcome(
                message_id=message.message_id,
                succeeded=True,
                error=str(e),
                error_type=type(e).__name__,
                details={"dropped": True},
            )
        logger.error(
            f"Item {message.message_id} failed: {type(e).__name__}: {str(e)}",
            exc_info=True,
            extra={"message_id": message.message_id},
        )
        return ItemOutcome(
            message_id=message.message_id,
            succeeded=False,
            error=str(e),
            error_type=type(e).__name__,
            details={"source": e.source, **e.details},
        )
    except Exception as e:
        logger.error(
            f"Item {message.message_id} failed unexpectedly: {str(e)}",
            exc_info=True,
            extra={"message_id": message.message_id},
        )
        return ItemOutcome(message_id=message.message_id, succeeded=False, error=str(e), error_type=type(e).__name__)


async def run_batch(
    messages: Iterable[ChannelMessage],
    handler: Handler,
    budget_seconds: Optional[float] = 30.0
) -> BatchReport:
    """Handle every message concurrently and report per-item failures.

    Parameters:
        messages: Messages of one batch
        handler: Async callable handling one message
        budget_seconds: Wall-clock budget for the whole batch (None = unbounded)

    Returns:
        BatchReport: Successes and failures in input order
    """
    messages = list(messages)
    report = BatchReport()
    if not messages:
        return report

    tasks = [asyncio.create_task(_run_item(message, handler)) for message in messages]
    done, pending = await asyncio.wait(tasks, timeout=budget_seconds)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.error(f"Batch budget of {budget_seconds}s exceeded; {len(pending)} item(s) cancelled")

    for message, task in zip(messages, tasks):
        if task in done and not task.cancelled():
            outcome = task.result()
        else:
            outcome = ItemOutcome(
                message_id=message.message_id,
                succeeded=False,
                error="batch budget exceeded",
                error_type="TimeoutError",
            )
        report.outcomes[message.message_id] = outcome
        if outcome.succeeded:
            report.succeeded.append(message.message_id)
        else:
            report.batch_item_failures.append(message.message_id)
    return report


async def drive_channel(
    channel: InMemoryChannel,
    handler: Handler,
    batch_size: int = 10,
    budget_seconds: Optional[float] = 30.0
) -> Optional[BatchReport]:
    """Receive one batch from the channel, run it, ack successes and nack failures.

    Returns:
        BatchReport, or None when no message was visible
    """
    messages = channel.receive(batch_size)
    if not messages:
        return None
    report = await run_batch(messages, handler, budget_seconds)
    for message_id in report.succeeded:
        channel.ack(message_id)
    for message_id in report.batch_item_failures:
        channel.nack(message_id)
    logger.info(
        f"{channel.name}: batch of {len(messages)} done, "
        f"{len(report.succeeded)} succeeded, {report.failed_count} failed"
    )
    return report
