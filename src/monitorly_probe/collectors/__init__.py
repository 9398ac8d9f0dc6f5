"""
Monitorly Probe Collectors.

Each collector takes one reading of a specific part of the host.
"""

from ..config import ProbeConfig
from .base import (
    Collector,
    CollectorError,
    Sample,
    CATEGORY_SYSTEM,
    METRIC_NAMES,
)
from .system import CPUCollector, RAMCollector, DiskCollector
from .services import ServiceCollector
from .users import UserActivityCollector
from .login_failures import LoginFailuresCollector
from .ports import PortCollector
from .info import SystemInfoCollector


def build_collectors(config: ProbeConfig) -> list[tuple[Collector, float]]:
    """Instantiate every enabled collector with its interval in seconds."""
    collection = config.collection
    factories = {
        "cpu": CPUCollector,
        "ram": RAMCollector,
        "disk": lambda: DiskCollector(collection.disk.mount_points),
        "service": lambda: ServiceCollector(collection.service.services),
        "user_activity": UserActivityCollector,
        "login_failures": LoginFailuresCollector,
        "port": PortCollector,
    }

    collectors = []
    for name, cfg in config.collectors():
        if cfg.enabled:
            collectors.append((factories[name](), cfg.interval))
    return collectors


__all__ = [
    "Collector",
    "CollectorError",
    "Sample",
    "CATEGORY_SYSTEM",
    "METRIC_NAMES",
    "CPUCollector",
    "RAMCollector",
    "DiskCollector",
    "ServiceCollector",
    "UserActivityCollector",
    "LoginFailuresCollector",
    "PortCollector",
    "SystemInfoCollector",
    "build_collectors",
]
