"""
Batching.

Accumulates samples from the collectors and hands them to a sender on a
fixed interval. A batch is only cleared once the sender confirms
delivery; failed batches are kept and merged with newer samples.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .collectors.base import Sample
from .sender import Sender, SendContext, SendResult
from .settings import settings
from .utils.logger import ProbeLogger


@dataclass
class Batch:
    """Samples waiting to be sent, in arrival order."""
    samples: list[Sample] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.samples)


class BatchAggregator:
    """
    Batch aggregator that:
    - Preserves arrival order of samples
    - Clears the batch only after a successful send
    - Terminates the process on fatal send errors, or records them
      during the final flush so the caller can exit after cleanup
    """

    def __init__(self, sender: Sender, logger: ProbeLogger):
        """Initialize the batch aggregator."""
        self.sender = sender
        self.logger = logger
        self._batch = Batch()
        self.fatal_error: Optional[str] = None

    @property
    def pending(self) -> list[Sample]:
        return list(self._batch.samples)

    def add(self, samples: Iterable[Sample]) -> None:
        """Append samples to the pending batch."""
        self._batch.samples.extend(samples)

    async def flush(self, ctx: Optional[SendContext] = None, final: bool = False) -> Optional[SendResult]:
        """
        Send the pending batch.

        Returns None without calling the sender when nothing is pending.
        A fatal result ends the process; on the final flush it is kept in
        ``fatal_error`` instead.
        """
        if not self._batch.samples:
            return None

        samples = list(self._batch.samples)
        if ctx is None:
            result = await self.sender.send(samples)
        else:
            result = await self.sender.send_with_context(ctx, samples)

        if result.success:
            del self._batch.samples[:len(samples)]
            self.logger.info(f"Sent {len(samples)} metrics")
        elif result.fatal and not final:
            self.logger.fatal(f"Fatal error sending metrics: {result.error}")
        elif result.fatal:
            self.fatal_error = result.error
            self.logger.error(f"Fatal error sending metrics during shutdown: {result.error}")
        else:
            self.logger.error(
                f"Failed to send metrics ({len(samples)} kept for next attempt): {result.error}"
            )
        return result

    def clear(self) -> None:
        self._batch = Batch()


class BatchScheduler:
    """Receives samples from the collectors and flushes them periodically."""

    def __init__(
        self,
        aggregator: BatchAggregator,
        queue: asyncio.Queue,
        send_interval: float,
        stop_event: asyncio.Event,
        logger: ProbeLogger,
        final_flush_timeout: float = settings.shutdown_timeout,
    ):
        """Initialize the scheduler."""
        self.aggregator = aggregator
        self.queue = queue
        self.send_interval = send_interval
        self.stop_event = stop_event
        self.logger = logger
        self.final_flush_timeout = final_flush_timeout

    async def run(self):
        """Main scheduler loop; returns after the final flush."""
        loop = asyncio.get_running_loop()
        next_flush = loop.time() + self.send_interval
        stop_wait = asyncio.ensure_future(self.stop_event.wait())

        try:
            while not self.stop_event.is_set():
                get_task = asyncio.ensure_future(self.queue.get())
                await asyncio.wait(
                    {get_task, stop_wait},
                    timeout=max(0.0, next_flush - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if get_task.done():
                    self.aggregator.add(get_task.result())
                else:
                    get_task.cancel()

                if not self.stop_event.is_set() and loop.time() >= next_flush:
                    await self.aggregator.flush()
                    next_flush = loop.time() + self.send_interval
        finally:
            stop_wait.cancel()

        await self._final_flush()

    async def _final_flush(self):
        """Drain what the collectors already queued and try one last send."""
        while True:
            try:
                self.aggregator.add(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break

        if self.aggregator.pending:
            self.logger.info(f"Sending {len(self.aggregator.pending)} remaining metrics before exit")
            await self.aggregator.flush(SendContext(timeout=self.final_flush_timeout), final=True)
        self.aggregator.clear()
