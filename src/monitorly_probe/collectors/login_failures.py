"""
Login Failures Collector.

Scans the systemd journal, or the classic auth logs when journalctl is
unavailable, for failed authentication attempts since the last check.
"""

import re
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .base import Collector, Sample, NAME_LOGIN_FAILURES

AUTH_LOG_PATHS = ("/var/log/auth.log", "/var/log/secure")

_SYSLOG_TS = r"(\w+\s+\d+\s+\d+:\d+:\d+)"
_ISO_TS = r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:[+-]\d{2}:?\d{2}|Z))"

# (regex body, groups) where groups names what follows the timestamp group
_FAILURE_PATTERNS = [
    (r".*sshd.*Failed password for (?:invalid user )?(\S+) from ([\d\.:a-fA-F]+)", ("user", "ip")),
    (r".*sshd.*Invalid user (\S+) from ([\d\.:a-fA-F]+)", ("user", "ip")),
    (r".*sshd.*Connection closed by ([\d\.:a-fA-F]+) port \d+ \[preauth\]", ("ip",)),
    (r".*pam.*authentication failure.*rhost=([\d\.:a-fA-F]+).*user=(\S+)", ("ip", "user")),
    (r".*pam.*authentication failure.*user=(\S+).*rhost=([\d\.:a-fA-F]+)", ("user", "ip")),
    (r".*login.*FAILED LOGIN.*FROM '?([^\s,']+)'?.*FOR '?([^\s,']+)", ("ip", "user")),
]


@dataclass
class LoginFailure:
    """A failed login attempt."""
    timestamp: str
    username: str
    source_ip: str
    service: str
    message: str


def _compile(ts_pattern: str) -> list[tuple[re.Pattern, tuple[str, ...]]]:
    return [(re.compile(ts_pattern + body), groups) for body, groups in _FAILURE_PATTERNS]


SYSLOG_PATTERNS = _compile(_SYSLOG_TS)
JOURNAL_PATTERNS = _compile(_ISO_TS)


def extract_service(line: str) -> str:
    for marker, service in (("sshd", "ssh"), ("systemd-logind", "systemd-logind"),
                            ("pam", "pam"), ("login", "login")):
        if marker in line:
            return service
    return "unknown"


def parse_syslog_timestamp(text: str, now: Optional[datetime] = None) -> datetime:
    """Parse ``Jan  2 15:04:05`` (no year) as local time in the current year."""
    now = now or datetime.now().astimezone()
    parsed = datetime.strptime(f"{now.year} {' '.join(text.split())}", "%Y %b %d %H:%M:%S")
    parsed = parsed.replace(tzinfo=now.tzinfo)
    # A December line read in January belongs to last year
    if parsed > now + timedelta(days=1):
        parsed = parsed.replace(year=now.year - 1)
    return parsed


def parse_iso_timestamp(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif re.search(r"[+-]\d{4}$", text):
        text = f"{text[:-2]}:{text[-2:]}"
    return datetime.fromisoformat(text)


def parse_failures(
    lines: list[str],
    patterns: list[tuple[re.Pattern, tuple[str, ...]]],
    parse_ts: Callable[[str], datetime],
    since: datetime,
) -> list[LoginFailure]:
    """Match log lines against the failure patterns; one failure per line."""
    failures = []

    for line in lines:
        for pattern, groups in patterns:
            match = pattern.search(line)
            if not match:
                continue
            try:
                timestamp = parse_ts(match.group(1))
            except ValueError:
                break
            if timestamp < since:
                break

            values = dict(zip(groups, match.groups()[1:]))
            failures.append(LoginFailure(
                timestamp=timestamp.isoformat(),
                username=values.get("user", "unknown"),
                source_ip=values.get("ip", ""),
                service=extract_service(line),
                message=line,
            ))
            break

    return failures


class LoginFailuresCollector(Collector):
    """Collects failures since the previous collection as a single sample."""

    name = "login_failures"

    def __init__(self, timeout: float = 10.0, log_paths: tuple[str, ...] = AUTH_LOG_PATHS):
        self.timeout = timeout
        self.log_paths = log_paths
        self.last_check = datetime.now(timezone.utc) - timedelta(minutes=1)

    def collect_sync(self) -> list[Sample]:
        now = datetime.now(timezone.utc)
        failures = self.failures_since(self.last_check)
        self.last_check = now
        return [Sample.now(NAME_LOGIN_FAILURES, [asdict(f) for f in failures])]

    def failures_since(self, since: datetime) -> list[LoginFailure]:
        """Try each log source in order of preference."""
        lines = self._journal_lines(since)
        if lines is not None:
            return parse_failures(lines, JOURNAL_PATTERNS, parse_iso_timestamp, since)

        for path in self.log_paths:
            lines = self._file_lines(path)
            if lines is not None:
                return parse_failures(lines, SYSLOG_PATTERNS, parse_syslog_timestamp, since)

        return []

    def _journal_lines(self, since: datetime) -> Optional[list[str]]:
        since_local = since.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        try:
            result = subprocess.run(
                [
                    "journalctl", "--since", since_local,
                    "-u", "ssh", "-u", "sshd", "-u", "systemd-logind",
                    "--no-pager", "-o", "short-iso",
                ],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.splitlines()

    def _file_lines(self, path: str) -> Optional[list[str]]:
        try:
            with open(path, 'r', errors='replace') as f:
                return f.read().splitlines()
        except OSError:
            return None
