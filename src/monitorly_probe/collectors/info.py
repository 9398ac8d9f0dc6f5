"""
System Information Collector.

One-shot inventory of the host, sent once when the probe starts.
"""

import asyncio
import platform
import shutil
import socket
import subprocess
from typing import Optional
import aiohttp
import psutil

from ..utils.logger import ProbeLogger
from .base import Collector, Sample, NAME_SYSTEM_INFO, run_blocking

PUBLIC_IP_URL = "https://api.ipify.org"

SKIP_DEVICE_PREFIXES = ("/dev/loop", "/dev/ram")
SKIP_MOUNT_MARKERS = ("/boot", "/snap")
SKIP_FSTYPES = ("squashfs", "swap", "tmpfs", "devtmpfs")


class SystemInfoCollector(Collector):
    """Collects host inventory: OS, CPU, RAM, disks, services and boot time."""

    name = "system_info"

    def __init__(
        self,
        logger: ProbeLogger,
        public_ip_url: Optional[str] = PUBLIC_IP_URL,
        timeout: float = 5.0,
    ):
        self.logger = logger
        self.public_ip_url = public_ip_url
        self.timeout = timeout

    async def collect(self) -> list[Sample]:
        info = await run_blocking(self.host_info)
        info["public_ip"] = await self._public_ip()
        return [Sample.now(NAME_SYSTEM_INFO, info)]

    def collect_sync(self) -> list[Sample]:
        info = self.host_info()
        info["public_ip"] = ""
        return [Sample.now(NAME_SYSTEM_INFO, info)]

    def host_info(self) -> dict:
        """Everything except the public address (blocking)."""
        uname = platform.uname()
        freq = psutil.cpu_freq()

        return {
            "hostname": socket.gethostname(),
            "public_ip": "",
            "os": platform.system().lower(),
            "os_version": _os_version(),
            "kernel_version": uname.release,
            "cpu": {
                "name": _cpu_model() or uname.processor,
                "cores": psutil.cpu_count(logical=False) or psutil.cpu_count() or 0,
                "frequency_mhz": round(freq.current, 2) if freq else 0.0,
            },
            "ram": {"total_bytes": psutil.virtual_memory().total},
            "disks": self._disks(),
            "services": self._services(),
            "last_boot_time": int(psutil.boot_time()),
        }

    def _disks(self) -> list[dict]:
        disks = []
        for partition in psutil.disk_partitions(all=False):
            if (partition.device.startswith(SKIP_DEVICE_PREFIXES)
                    or any(m in partition.mountpoint for m in SKIP_MOUNT_MARKERS)
                    or partition.fstype in SKIP_FSTYPES):
                continue
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except (PermissionError, OSError):
                continue
            disks.append({
                "mountpoint": partition.mountpoint,
                "label": partition.device,
                "total_bytes": usage.total,
            })
        return disks

    def _services(self) -> list[str]:
        """Active services from systemd, or SysV when systemd is absent."""
        if shutil.which("systemctl"):
            cmd = ["systemctl", "list-units", "--type=service", "--state=active",
                   "--no-pager", "--no-legend", "--plain"]
        else:
            cmd = ["service", "--status-all"]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Failed to get service list: {e}")
            return []
        if result.returncode != 0:
            self.logger.warning(f"Failed to get service list: exit status {result.returncode}")
            return []

        services = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if not fields:
                continue
            if cmd[0] == "systemctl":
                services.append(fields[0].removesuffix(".service"))
            elif len(fields) > 1:
                services.append(fields[-1])
        return services

    async def _public_ip(self) -> str:
        """Best effort; an empty string when the lookup fails."""
        if not self.public_ip_url:
            return ""
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.public_ip_url) as response:
                    if response.status != 200:
                        self.logger.warning(f"Failed to get public IP: status code {response.status}")
                        return ""
                    return (await response.text()).strip()[:45]
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Failed to get public IP: {e}")
            return ""


def _os_version() -> str:
    try:
        release = platform.freedesktop_os_release()
        return release.get("VERSION_ID") or release.get("VERSION", "")
    except (OSError, AttributeError):
        return platform.version()


def _cpu_model() -> str:
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.lower().startswith("model name"):
                    return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return ""
