"""
Service Collector.

Reports whether each configured service is running, using systemd when it
is present and SysV init scripts otherwise.
"""

import shutil
import subprocess

from ..config import Service
from .base import Collector, Sample, NAME_SERVICE

STATUS_ACTIVE = 0.0
STATUS_INACTIVE = 1.0


class ServiceCollector(Collector):
    """Collects service status samples."""

    name = "service"

    def __init__(self, services: list[Service], timeout: float = 5.0):
        self.services = list(services)
        self.timeout = timeout

    def collect_sync(self) -> list[Sample]:
        use_systemd = shutil.which("systemctl") is not None
        samples = []

        for service in self.services:
            if use_systemd:
                active = self._is_active_systemd(service.name)
            else:
                active = self._is_active_sysv(service.name)

            samples.append(Sample.now(
                NAME_SERVICE,
                STATUS_ACTIVE if active else STATUS_INACTIVE,
                metadata={"name": service.name, "label": service.label},
            ))

        return samples

    def _run_ok(self, cmd: list[str]) -> bool:
        """True when the command exits with status 0."""
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def _is_active_systemd(self, name: str) -> bool:
        return self._run_ok(["systemctl", "is-active", "--quiet", name])

    def _is_active_sysv(self, name: str) -> bool:
        # service(8) is the more portable entry point
        if self._run_ok(["service", name, "status"]):
            return True
        return self._run_ok([f"/etc/init.d/{name}", "status"])
