"""
User Activity Collector.

Lists active login sessions from ``who``.
"""

import ipaddress
import re
import subprocess
from dataclasses import asdict, dataclass

from .base import Collector, CollectorError, Sample, NAME_USER_ACTIVITY

# username terminal login_time (ip_address)
WHO_LINE = re.compile(r"^(\S+)\s+(\S+)\s+(.+?)\s*(?:\(([^)]+)\))?$")


@dataclass
class UserSession:
    """An active user session."""
    username: str
    terminal: str
    login_ip: str
    login_time: str


def is_ip_address(text: str) -> bool:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


class UserActivityCollector(Collector):
    """Collects the list of logged-in sessions as a single sample."""

    name = "user_activity"

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def collect_sync(self) -> list[Sample]:
        try:
            result = subprocess.run(
                ["who"], capture_output=True, text=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CollectorError(f"failed to execute 'who' command: {e}") from e
        if result.returncode != 0:
            raise CollectorError(f"'who' exited with status {result.returncode}")

        sessions = self.parse_who_output(result.stdout)
        return [Sample.now(NAME_USER_ACTIVITY, [asdict(s) for s in sessions])]

    def parse_who_output(self, output: str) -> list[UserSession]:
        sessions = []

        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue

            match = WHO_LINE.match(line)
            if not match:
                continue

            username, terminal, login_time, login_ip = match.groups()
            login_time = login_time.strip()
            login_ip = login_ip or ""

            if not login_ip:
                # Some who(1) builds print the host without parentheses
                parts = login_time.split()
                if parts and is_ip_address(parts[-1]):
                    login_ip = parts[-1]
                    login_time = " ".join(parts[:-1])

            if not login_ip:
                login_ip = self._ip_from_w(username, terminal)

            sessions.append(UserSession(
                username=username,
                terminal=terminal,
                login_ip=login_ip,
                login_time=login_time,
            ))

        return sessions

    def _ip_from_w(self, username: str, terminal: str) -> str:
        """Look up the session's source address in ``w`` output."""
        try:
            result = subprocess.run(
                ["w", username], capture_output=True, text=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired):
            return ""
        if result.returncode != 0:
            return ""

        for line in result.stdout.splitlines():
            if terminal in line:
                for token in line.split():
                    if is_ip_address(token):
                        return token
        return ""
