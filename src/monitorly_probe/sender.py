"""
API Sender.

Delivers batches of samples to the Monitorly API. Payloads are encrypted
when a key is configured and the server accepts it, and gzip-compressed
when large. Server responses drive encryption fallback, rate-limit
reporting and configuration updates.
"""

import abc
import asyncio
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
import aiohttp
import psutil

from .collectors.base import Sample, run_blocking
from .compression import compress, should_compress
from .config import ConfigError, ProbeConfig, merge_remote_config, parse_timestamp
from .encryption import encrypt
from .settings import settings
from .utils.logger import ProbeLogger
from .version import __version__

CONFIG_UPDATE_HEADER = "X-Configuration-Last-Update"
RETRY_AFTER_HEADERS = ("X-RateLimit-Retry-After", "Retry-After")


@dataclass
class SendResult:
    """Result of a send operation."""
    success: bool
    status_code: int = 0
    error: Optional[str] = None
    retry_after: Optional[int] = None
    fatal: bool = False


@dataclass
class SendContext:
    """Deadline and cancellation for a single send."""
    timeout: Optional[float] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Sender(abc.ABC):
    """Delivers a batch somewhere. Implementations never mutate the batch."""

    async def send(self, samples: list[Sample]) -> SendResult:
        return await self.send_with_context(SendContext(), samples)

    @abc.abstractmethod
    async def send_with_context(self, ctx: SendContext, samples: list[Sample]) -> SendResult:
        """Send, giving up when ``ctx`` is cancelled or times out."""

    async def close(self) -> None:
        """Release resources held by the sender."""


class StickyFlag:
    """A boolean that can only go from False to True."""

    def __init__(self):
        self._value = False
        self._lock = threading.Lock()

    def is_set(self) -> bool:
        return self._value

    def swap(self) -> bool:
        """Set the flag and return its previous value."""
        with self._lock:
            previous = self._value
            self._value = True
            return previous


def _boot_time() -> Optional[int]:
    try:
        return int(psutil.boot_time())
    except (OSError, RuntimeError):
        return None


class APISender(Sender):
    """
    Sends samples to the Monitorly API.

    Features:
    - Async HTTP client with a reused session
    - AES-GCM payload encryption with a one-way fallback on 412
    - gzip compression of bodies over 1 KiB
    - Configuration refresh when the server reports a newer version
    """

    def __init__(
        self,
        config: ProbeConfig,
        logger: ProbeLogger,
        restart_queue: Optional[asyncio.Queue] = None,
        config_path: Optional[str] = None,
        boot_time: Optional[int] = None,
        timeout: float = settings.request_timeout,
    ):
        """Initialize the sender."""
        self.base_url = config.api.url.rstrip('/')
        self.project_path = config.api.project_path
        self.token = config.api.application_token
        self.encryption_key = config.api.encryption_key
        self.machine_name = config.get_machine_name()
        self.boot_time = boot_time if boot_time is not None else _boot_time()
        self.timeout = timeout
        self.logger = logger
        self.restart_queue = restart_queue
        self.config_path = config_path

        self.encryption_unavailable = StickyFlag()
        self.fallback_warned = StickyFlag()
        self.config_last_update: Optional[datetime] = config.api.last_update_time()
        self.send_interval = config.sender.send_interval

        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.project_path}"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _get_headers(self, compressed: bool = False) -> dict:
        """Get request headers."""
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {self.token}',
            'User-Agent': f'monitorly-probe/{__version__}',
        }
        if compressed:
            headers['Content-Encoding'] = 'gzip'
        return headers

    async def send_with_context(self, ctx: SendContext, samples: list[Sample]) -> SendResult:
        if ctx.cancelled():
            return SendResult(success=False, error="send cancelled")

        send_task = asyncio.ensure_future(self._send(samples))
        cancel_task = asyncio.ensure_future(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {send_task, cancel_task},
                timeout=ctx.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_task.cancel()

        if send_task in done:
            return send_task.result()

        send_task.cancel()
        try:
            await send_task
        except asyncio.CancelledError:
            pass
        if cancel_task in done:
            return SendResult(success=False, error="send cancelled")
        return SendResult(success=False, error=f"send timed out after {ctx.timeout} seconds")

    async def _send(self, samples: list[Sample]) -> SendResult:
        """Build, post and interpret one request. Recurses once on 412."""
        try:
            body, encrypted, compressed = self._build_body(samples)
        except (TypeError, ValueError) as e:
            return SendResult(success=False, error=f"failed to serialize payload: {e}")

        try:
            session = await self._get_session()
            async with session.post(
                self.endpoint,
                data=body,
                headers=self._get_headers(compressed),
            ) as response:
                status = response.status
                headers = response.headers
        except asyncio.TimeoutError:
            return SendResult(success=False, error="request timed out")
        except aiohttp.ClientError as e:
            return SendResult(success=False, error=f"failed to send request: {e}")

        if 200 <= status < 300:
            await self._check_config_update(headers)
            return SendResult(success=True, status_code=status)

        if status == 412:
            if not encrypted:
                return SendResult(
                    success=False,
                    status_code=status,
                    error="API rejected unencrypted payload with status 412",
                )
            if not self.fallback_warned.swap():
                self.logger.warning(
                    "Server does not accept encrypted payloads, falling back to unencrypted transmission"
                )
            # Must be set before retrying so the retry goes out unencrypted
            self.encryption_unavailable.swap()
            return await self._send(samples)

        return self._error_result(status, headers)

    def _error_result(self, status: int, headers) -> SendResult:
        """Map a non-2xx status (other than 412) to a result."""
        if status == 401:
            return SendResult(
                success=False,
                status_code=status,
                error="authentication failed: invalid application token",
                fatal=True,
            )

        if status == 404:
            return SendResult(
                success=False,
                status_code=status,
                error=f"server not found: check organization_id and server_id ({self.project_path})",
                fatal=True,
            )

        if status == 413:
            error = "payload too large for current plan"
            self.logger.warning(f"API returned 413: {error}")
            return SendResult(success=False, status_code=status, error=error)

        if status == 429:
            retry_after = _retry_after(headers)
            error = "rate limit exceeded"
            if retry_after is not None:
                error += f", retry after {retry_after} seconds"
            self.logger.warning(f"API returned 429: {error}")
            return SendResult(success=False, status_code=status, error=error, retry_after=retry_after)

        if status == 503:
            error = "API is under maintenance"
            self.logger.warning(f"API returned 503: {error}")
            return SendResult(success=False, status_code=status, error=error)

        return SendResult(
            success=False,
            status_code=status,
            error=f"API returned non-success status: {status}",
        )

    def _build_body(self, samples: list[Sample]) -> tuple[bytes, bool, bool]:
        """Serialize samples into (body, encrypted, compressed)."""
        payload: dict[str, Any] = {"machine_name": self.machine_name}
        if self.boot_time is not None:
            payload["boot_time"] = self.boot_time
        payload["metrics"] = [s.to_dict() for s in samples]
        payload["encrypted"] = False
        payload["compressed"] = False

        encrypted = False
        if self.encryption_key and not self.encryption_unavailable.is_set():
            data = encrypt(json.dumps(payload).encode("utf-8"), self.encryption_key)
            envelope: dict[str, Any] = {"machine_name": self.machine_name}
            if self.boot_time is not None:
                envelope["boot_time"] = self.boot_time
            envelope["encrypted"] = True
            envelope["compressed"] = False
            envelope["data"] = data
            payload = envelope
            encrypted = True

        body = json.dumps(payload).encode("utf-8")
        if not should_compress(body):
            return body, encrypted, False

        # The flag travels inside the compressed body
        payload["compressed"] = True
        try:
            return compress(json.dumps(payload).encode("utf-8")), encrypted, True
        except OSError as e:
            self.logger.warning(f"Failed to compress payload, sending uncompressed: {e}")
            payload["compressed"] = False
            return body, encrypted, False

    async def _check_config_update(self, headers) -> None:
        """Fetch and apply newer configuration announced by the server."""
        raw = headers.get(CONFIG_UPDATE_HEADER)
        if not raw:
            return

        try:
            server_time = parse_timestamp(raw)
        except ValueError as e:
            self.logger.warning(f"Ignoring invalid {CONFIG_UPDATE_HEADER} header {raw!r}: {e}")
            return

        if self.config_last_update is not None and server_time <= self.config_last_update:
            return
        if not self.config_path:
            self.logger.warning("Configuration update available but no config file to update")
            return

        self.logger.info(f"Configuration update available ({raw}), fetching new configuration")
        try:
            remote = await self._fetch_config()
            new_config = await run_blocking(merge_remote_config, self.config_path, remote, server_time)
        except (aiohttp.ClientError, asyncio.TimeoutError, ConfigError, OSError, ValueError) as e:
            self.logger.error(f"Failed to update configuration: {e}")
            return

        self.config_last_update = server_time
        self.send_interval = new_config.sender.send_interval
        self.logger.info("Configuration updated, restarting probe")
        self.signal_restart()

    async def _fetch_config(self) -> dict:
        session = await self._get_session()
        async with session.get(
            f"{self.endpoint}/config",
            headers=self._get_headers(),
        ) as response:
            if response.status != 200:
                raise ConfigError(f"config endpoint returned status {response.status}")
            return await response.json(content_type=None)

    def signal_restart(self) -> None:
        if self.restart_queue is not None:
            request_restart(self.restart_queue, self.logger)

    async def close(self):
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def _retry_after(headers) -> Optional[int]:
    """Seconds to wait, from the rate-limit headers, if present."""
    for name in RETRY_AFTER_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        try:
            return int(float(value))
        except ValueError:
            continue
    return None


def request_restart(queue: asyncio.Queue, logger: ProbeLogger) -> None:
    """Request a restart; a pending request already covers this one."""
    try:
        queue.put_nowait(True)
    except asyncio.QueueFull:
        logger.debug("Restart already pending")
