"""Shared fixtures for the probe tests."""

import asyncio
import gzip
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from monitorly_probe.collectors.base import Sample
from monitorly_probe.config import APIConfig, ProbeConfig
from monitorly_probe.sender import APISender

ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
BOOT_TIME = 1700000000


class RecordingLogger:
    """ProbeLogger stand-in that records instead of printing or exiting."""

    def __init__(self):
        self.records: list[tuple[str, str]] = []

    def _record(self, level: str, msg: str, *args) -> None:
        self.records.append((level, msg % args if args else msg))

    def debug(self, msg, *args):
        self._record("debug", msg, *args)

    def info(self, msg, *args):
        self._record("info", msg, *args)

    def warning(self, msg, *args):
        self._record("warning", msg, *args)

    def error(self, msg, *args):
        self._record("error", msg, *args)

    def fatal(self, msg, *args):
        self._record("fatal", msg, *args)

    def messages(self, level: str) -> list[str]:
        return [msg for lvl, msg in self.records if lvl == level]


@dataclass
class RecordedRequest:
    path: str
    headers: Any
    body: dict


@dataclass
class FakeAPI:
    """In-process stand-in for the Monitorly API."""
    url: str = ""
    responses: list[tuple[int, dict]] = field(default_factory=list)
    requests: list[RecordedRequest] = field(default_factory=list)
    remote_config: dict = field(default_factory=dict)
    config_status: int = 200
    config_requests: int = 0
    delay: float = 0.0

    def respond(self, status: int, headers: Optional[dict] = None) -> None:
        """Queue a response for the next POST; unqueued POSTs get 200."""
        self.responses.append((status, headers or {}))

    async def handle_post(self, request: web.Request) -> web.Response:
        raw = await request.read()
        # The server may or may not have undone Content-Encoding already
        if raw[:2] == b"\x1f\x8b":
            raw = gzip.decompress(raw)
        self.requests.append(RecordedRequest(
            path=request.path,
            headers=request.headers.copy(),
            body=json.loads(raw),
        ))
        if self.delay:
            await asyncio.sleep(self.delay)
        status, headers = self.responses.pop(0) if self.responses else (200, {})
        return web.Response(status=status, headers=headers)

    async def handle_config(self, request: web.Request) -> web.Response:
        self.config_requests += 1
        if self.config_status != 200:
            return web.Response(status=self.config_status)
        return web.json_response(self.remote_config)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{path:.*}/config", self.handle_config)
        app.router.add_post("/{path:.*}", self.handle_post)
        return app


def make_samples(count: int, name: str = "cpu") -> list[Sample]:
    base = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
    return [
        Sample(timestamp=base.replace(second=i % 60), name=name, value=float(i))
        for i in range(count)
    ]


def make_config(url: str = "http://127.0.0.1:1", encryption_key: str = "", **sender) -> ProbeConfig:
    config = ProbeConfig(machine_name="web-01")
    config.api = APIConfig(
        url=url,
        organization_id="org-1",
        server_id="srv-1",
        application_token="token-123",
        encryption_key=encryption_key,
    )
    for key, value in sender.items():
        setattr(config.sender, key, value)
    return config


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def samples():
    return make_samples


@pytest_asyncio.fixture
async def fake_api():
    api = FakeAPI()
    server = TestServer(api.make_app())
    await server.start_server()
    api.url = str(server.make_url("")).rstrip("/")
    yield api
    await server.close()


@pytest_asyncio.fixture
async def make_sender(fake_api, logger):
    """Factory for APISenders pointed at the fake API."""
    created = []

    def factory(encryption_key: str = "", **kwargs: Any) -> APISender:
        config = make_config(fake_api.url, encryption_key=encryption_key)
        sender = APISender(config, logger, boot_time=BOOT_TIME, **kwargs)
        created.append(sender)
        return sender

    yield factory
    for sender in created:
        await sender.close()
