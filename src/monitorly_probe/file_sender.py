"""
File Sender.

Appends samples to a local file as indented JSON objects, one per sample.
Used when the sender target is ``log_file``.
"""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from .collectors.base import Sample
from .sender import Sender, SendContext, SendResult
from .utils.logger import ProbeLogger


class FileSender(Sender):
    """Writes samples to an append-only file."""

    def __init__(self, path: str, logger: ProbeLogger):
        self.path = Path(path)
        self.logger = logger

    async def send_with_context(self, ctx: SendContext, samples: list[Sample]) -> SendResult:
        if ctx.cancelled():
            return SendResult(success=False, error="send cancelled")

        loop = asyncio.get_running_loop()
        try:
            written = await asyncio.wait_for(
                loop.run_in_executor(None, self._write, ctx, list(samples)),
                timeout=ctx.timeout,
            )
        except asyncio.TimeoutError:
            ctx.cancel_event.set()
            return SendResult(success=False, error=f"send timed out after {ctx.timeout} seconds")
        except (OSError, TypeError, ValueError) as e:
            return SendResult(success=False, error=f"failed to write metrics to {self.path}: {e}")

        if written < len(samples):
            return SendResult(
                success=False,
                error=f"send cancelled after writing {written} of {len(samples)} metrics",
            )
        self.logger.debug(f"Wrote {written} metrics to {self.path}")
        return SendResult(success=True)

    def _write(self, ctx: SendContext, samples: list[Sample]) -> int:
        """Blocking write; returns the number of samples written."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        written = 0

        with open(self.path, 'a') as f:
            for sample in samples:
                if ctx.cancelled():
                    break
                entry = {
                    "log_time": datetime.now(timezone.utc).isoformat(),
                    "metric": sample.to_dict(),
                }
                f.write(json.dumps(entry, indent=2))
                f.write("\n")
                written += 1

        return written
