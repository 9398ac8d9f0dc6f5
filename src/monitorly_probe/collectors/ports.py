"""
Port Collector.

Lists open TCP and UDP sockets together with the owning process.
"""

import socket
from dataclasses import asdict, dataclass
from typing import Optional
import psutil

from .base import Collector, CollectorError, Sample, NAME_PORT


@dataclass
class PortInfo:
    """An open socket and the process holding it."""
    protocol: str
    local_addr: str
    local_port: int
    remote_addr: str
    remote_port: int
    status: str
    process_id: int
    process_name: str = ""


class PortCollector(Collector):
    """Collects every open port as a single sample."""

    name = "port"

    def collect_sync(self) -> list[Sample]:
        ports = []
        names: dict[int, str] = {}

        for protocol in ("tcp", "udp"):
            try:
                connections = psutil.net_connections(kind=protocol)
            except (psutil.AccessDenied, OSError) as e:
                raise CollectorError(f"failed to get {protocol.upper()} connections: {e}") from e

            for conn in connections:
                ports.append(self._port_info(protocol, conn, names))

        return [Sample.now(NAME_PORT, [asdict(p) for p in ports])]

    def _port_info(self, protocol: str, conn, names: dict[int, str]) -> PortInfo:
        laddr = conn.laddr or ("", 0)
        raddr = conn.raddr or ("", 0)
        pid = conn.pid or 0

        process_name = ""
        if pid > 0:
            if pid not in names:
                names[pid] = self._process_name(pid) or ""
            process_name = names[pid]

        return PortInfo(
            protocol=protocol,
            local_addr=laddr[0],
            local_port=laddr[1],
            remote_addr=raddr[0],
            remote_port=raddr[1],
            # UDP sockets report NONE
            status=conn.status if conn.type == socket.SOCK_STREAM else "",
            process_id=pid,
            process_name=process_name,
        )

    def _process_name(self, pid: int) -> Optional[str]:
        try:
            return psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
