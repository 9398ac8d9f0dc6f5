"""
System Metrics Collectors.

CPU, memory and disk usage via psutil.
"""

import psutil

from ..config import MountPoint
from .base import Collector, Sample, NAME_CPU, NAME_RAM, NAME_DISK, round2


class CPUCollector(Collector):
    """Overall CPU utilisation over a one second window."""

    name = "cpu"

    def __init__(self, sample_interval: float = 1.0):
        self.sample_interval = sample_interval

    def collect_sync(self) -> list[Sample]:
        percent = psutil.cpu_percent(interval=self.sample_interval)
        return [Sample.now(NAME_CPU, round2(percent))]


class RAMCollector(Collector):
    """Used memory percentage."""

    name = "ram"

    def collect_sync(self) -> list[Sample]:
        mem = psutil.virtual_memory()
        return [Sample.now(NAME_RAM, round2(mem.percent))]


class DiskCollector(Collector):
    """One sample per configured mount point."""

    name = "disk"

    def __init__(self, mount_points: list[MountPoint]):
        self.mount_points = list(mount_points)

    def collect_sync(self) -> list[Sample]:
        samples = []

        for mp in self.mount_points:
            try:
                usage = psutil.disk_usage(mp.path)
            except (PermissionError, OSError):
                # Skip unreadable mount points, keep the rest
                continue

            value = {}
            if mp.collect_percent:
                value["percent"] = round2(usage.percent)
            if mp.collect_usage:
                value["used"] = usage.used
                value["total"] = usage.total
                value["available"] = usage.free

            samples.append(Sample.now(
                NAME_DISK,
                value,
                metadata={"mountpoint": mp.path, "label": mp.label},
            ))

        return samples
