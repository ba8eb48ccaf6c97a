"""Unit tests for the batch runner and channel driver."""

import asyncio

import pytest

from clinical_etl.domain.ports import RecordParseError, StoreError
from clinical_etl.infrastructure.channels import ChannelMessage, InMemoryChannel
from clinical_etl.pipeline.batch import drive_channel, run_batch


def message(message_id, **body):
    return ChannelMessage(message_id=message_id, body=body)


class TestRunBatch:
    """Per-item isolation inside one batch."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self):
        async def handler(msg):
            if msg.body.get("fail"):
                raise StoreError("store down", operation="upsert")
            return msg.message_id.upper()

        report = await run_batch([message("a"), message("b", fail=True), message("c")], handler)

        assert report.succeeded == ["a", "c"]
        assert report.batch_item_failures == ["b"]
        assert report.outcomes["a"].value == "A"
        assert report.outcomes["b"].error_type == "StoreError"
        assert report.outcomes["b"].error == "store down"
        assert report.to_response() == {"batchItemFailures": [{"itemIdentifier": "b"}]}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_item_failure(self):
        async def handler(msg):
            raise KeyError("boom")

        report = await run_batch([message("a")], handler)

        assert report.failed_count == 1
        assert report.outcomes["a"].error_type == "KeyError"

    @pytest.mark.asyncio
    async def test_drop_disposition_counts_as_handled(self):
        async def handler(msg):
            raise RecordParseError("unparseable record")

        report = await run_batch([message("a")], handler)

        assert report.succeeded == ["a"]
        assert report.outcomes["a"].details == {"dropped": True}
        assert report.to_response() == {"batchItemFailures": []}

    @pytest.mark.asyncio
    async def test_items_run_concurrently(self):
        started = asyncio.Event()

        async def handler(msg):
            if msg.message_id == "waiter":
                await asyncio.wait_for(started.wait(), timeout=1.0)
            else:
                started.set()

        report = await run_batch([message("waiter"), message("setter")], handler)

        assert report.failed_count == 0

    @pytest.mark.asyncio
    async def test_budget_exceeded_fails_slow_items(self):
        async def handler(msg):
            if msg.message_id == "slow":
                await asyncio.sleep(60)

        report = await run_batch([message("fast"), message("slow")], handler, budget_seconds=0.05)

        assert report.succeeded == ["fast"]
        assert report.batch_item_failures == ["slow"]
        assert report.outcomes["slow"].error_type == "TimeoutError"

    @pytest.mark.asyncio
    async def test_repeated_message_id_handled_per_delivery(self):
        handled = []

        async def handler(msg):
            handled.append((msg.message_id, msg.body["n"]))
            if msg.body["n"] == 2:
                raise StoreError("store down", operation="upsert")

        report = await run_batch([message("a", n=1), message("a", n=2), message("b", n=3)], handler)

        assert sorted(handled) == [("a", 1), ("a", 2), ("b", 3)]
        assert report.succeeded == ["a", "b"]
        assert report.batch_item_failures == ["a"]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        async def handler(msg):
            raise AssertionError("not called")

        report = await run_batch([], handler)

        assert report.to_response() == {"batchItemFailures": []}


class TestDriveChannel:
    """Ack successes, nack failures."""

    @pytest.mark.asyncio
    async def test_acks_and_nacks(self):
        channel = InMemoryChannel("work", max_receive_count=2)
        channel.send_nowait({"fail": False})
        channel.send_nowait({"fail": True})

        async def handler(msg):
            if msg.body["fail"]:
                raise StoreError("down")

        first = await drive_channel(channel, handler)
        second = await drive_channel(channel, handler)
        third = await drive_channel(channel, handler)

        assert (first.failed_count, len(first.succeeded)) == (1, 1)
        assert second.failed_count == 1
        assert third is None
        assert channel.dead_letter_count == 1
        assert channel.is_idle()

    @pytest.mark.asyncio
    async def test_empty_channel(self):
        async def handler(msg):
            return None

        assert await drive_channel(InMemoryChannel("empty"), handler) is None
