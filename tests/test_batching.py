"""Tests for the batch aggregator and scheduler."""

import asyncio

import pytest

from conftest import make_samples
from monitorly_probe.batching import BatchAggregator, BatchScheduler
from monitorly_probe.sender import Sender, SendContext, SendResult


class ScriptedSender(Sender):
    """Returns queued results in order, then succeeds; records every call."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []
        self.contexts = []

    async def send_with_context(self, ctx, samples):
        self.calls.append(samples)
        self.contexts.append(ctx)
        if self.results:
            return self.results.pop(0)
        return SendResult(success=True, status_code=200)


def failure(**kwargs):
    return SendResult(success=False, error="boom", **kwargs)


class TestBatchAggregator:

    @pytest.mark.asyncio
    async def test_empty_flush_does_not_send(self, logger):
        sender = ScriptedSender()
        aggregator = BatchAggregator(sender, logger)

        result = await aggregator.flush()

        assert result is None
        assert sender.calls == []
        assert aggregator.pending == []

    @pytest.mark.asyncio
    async def test_success_clears_batch(self, logger):
        sender = ScriptedSender()
        aggregator = BatchAggregator(sender, logger)
        batch = make_samples(3)
        aggregator.add(batch)

        result = await aggregator.flush()

        assert result.success
        assert sender.calls == [batch]
        assert aggregator.pending == []

    @pytest.mark.asyncio
    async def test_failed_batches_are_retained_in_order(self, logger):
        sender = ScriptedSender([failure(), failure()])
        aggregator = BatchAggregator(sender, logger)
        first, second, third = make_samples(2), make_samples(3, "ram"), make_samples(1, "disk")

        aggregator.add(first)
        await aggregator.flush()
        aggregator.add(second)
        await aggregator.flush()
        aggregator.add(third)
        result = await aggregator.flush()

        assert result.success
        assert sender.calls[0] == first
        assert sender.calls[1] == first + second
        assert sender.calls[2] == first + second + third
        assert aggregator.pending == []
        assert len(logger.messages("error")) == 2

    @pytest.mark.asyncio
    async def test_sender_gets_a_copy(self, logger):
        sender = ScriptedSender([failure()])
        aggregator = BatchAggregator(sender, logger)
        aggregator.add(make_samples(1))

        await aggregator.flush()
        aggregator.add(make_samples(1, "ram"))

        assert len(sender.calls[0]) == 1

    @pytest.mark.asyncio
    async def test_fatal_result_goes_through_fatal(self, logger):
        sender = ScriptedSender([failure(fatal=True)])
        aggregator = BatchAggregator(sender, logger)
        aggregator.add(make_samples(1))

        await aggregator.flush()

        assert logger.messages("fatal") == ["Fatal error sending metrics: boom"]

    @pytest.mark.asyncio
    async def test_final_flush_does_not_exit_on_fatal(self, logger):
        sender = ScriptedSender([failure(fatal=True)])
        aggregator = BatchAggregator(sender, logger)
        aggregator.add(make_samples(1))

        await aggregator.flush(final=True)

        assert logger.messages("fatal") == []
        assert logger.messages("error") == ["Fatal error sending metrics during shutdown: boom"]
        assert aggregator.fatal_error == "boom"

    @pytest.mark.asyncio
    async def test_context_is_passed_through(self, logger):
        sender = ScriptedSender()
        aggregator = BatchAggregator(sender, logger)
        aggregator.add(make_samples(1))
        ctx = SendContext(timeout=3)

        await aggregator.flush(ctx)

        assert sender.contexts == [ctx]


class TestBatchScheduler:

    @pytest.mark.asyncio
    async def test_flushes_on_interval(self, logger):
        sender = ScriptedSender()
        queue = asyncio.Queue(maxsize=10)
        stop = asyncio.Event()
        scheduler = BatchScheduler(BatchAggregator(sender, logger), queue, 0.05, stop, logger)
        batch = make_samples(2)

        task = asyncio.create_task(scheduler.run())
        await queue.put(batch)
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert sender.calls[0] == batch

    @pytest.mark.asyncio
    async def test_final_flush_on_stop(self, logger):
        sender = ScriptedSender()
        queue = asyncio.Queue(maxsize=10)
        stop = asyncio.Event()
        aggregator = BatchAggregator(sender, logger)
        scheduler = BatchScheduler(aggregator, queue, 60, stop, logger, final_flush_timeout=1)
        first, second = make_samples(2), make_samples(1, "ram")

        task = asyncio.create_task(scheduler.run())
        await queue.put(first)
        await asyncio.sleep(0.05)
        queue.put_nowait(second)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert sender.calls == [first + second]
        assert sender.contexts[0].timeout == 1
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_failed_final_flush_drops_batch(self, logger):
        sender = ScriptedSender([failure()])
        queue = asyncio.Queue(maxsize=10)
        stop = asyncio.Event()
        aggregator = BatchAggregator(sender, logger)
        scheduler = BatchScheduler(aggregator, queue, 60, stop, logger)
        queue.put_nowait(make_samples(1))
        stop.set()

        await asyncio.wait_for(scheduler.run(), timeout=2)

        assert len(sender.calls) == 1
        assert aggregator.pending == []

    @pytest.mark.asyncio
    async def test_stop_with_nothing_pending_sends_nothing(self, logger):
        sender = ScriptedSender()
        stop = asyncio.Event()
        scheduler = BatchScheduler(BatchAggregator(sender, logger), asyncio.Queue(), 60, stop, logger)
        stop.set()

        await asyncio.wait_for(scheduler.run(), timeout=2)

        assert sender.calls == []
