"""Sample model and the collector interface."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from ..config import ProbeError

T = TypeVar("T")

CATEGORY_SYSTEM = "system"

NAME_CPU = "cpu"
NAME_RAM = "ram"
NAME_DISK = "disk"
NAME_SERVICE = "service"
NAME_USER_ACTIVITY = "user_activity"
NAME_LOGIN_FAILURES = "login_failures"
NAME_PORT = "port"
NAME_SYSTEM_INFO = "system_info"

METRIC_NAMES = frozenset({
    NAME_CPU,
    NAME_RAM,
    NAME_DISK,
    NAME_SERVICE,
    NAME_USER_ACTIVITY,
    NAME_LOGIN_FAILURES,
    NAME_PORT,
    NAME_SYSTEM_INFO,
})


class CollectorError(ProbeError):
    """Raised when a collector cannot produce samples for this tick."""


@dataclass(frozen=True)
class Sample:
    """A single timestamped observation."""

    timestamp: datetime
    name: str
    value: Any
    category: str = CATEGORY_SYSTEM
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def now(cls, name: str, value: Any, metadata: dict[str, str] | None = None) -> Sample:
        return cls(
            timestamp=datetime.now(timezone.utc),
            name=name,
            value=value,
            metadata=dict(metadata or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire representation; metadata is omitted when empty."""
        data: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "name": self.name,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        data["value"] = self.value
        return data


def round2(value: float) -> float:
    return round(value, 2)


class Collector(abc.ABC):
    """Abstract base class for metric collectors."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Collector kind used in configuration and logs."""

    @abc.abstractmethod
    def collect_sync(self) -> list[Sample]:
        """Take one blocking reading."""

    async def collect(self) -> list[Sample]:
        """Take one reading without blocking the event loop."""
        return await run_blocking(self.collect_sync)


async def run_blocking(func: Callable[..., T], *args) -> T:
    """Run blocking psutil/subprocess work in the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)
