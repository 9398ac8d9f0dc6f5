"""
Version information and release checks.

Releases are looked up on GitHub; the probe only reports a newer
version, installing it is left to the package manager.
"""

import platform
import re
from datetime import datetime
from typing import Optional
import aiohttp
from pydantic import BaseModel

from .settings import settings

__version__ = "1.0.0"

GITHUB_API_URL = "https://api.github.com"


class Release(BaseModel):
    """The subset of a GitHub release the probe cares about."""
    tag_name: str
    html_url: str = ""
    published_at: Optional[datetime] = None


class UpdateInfo(BaseModel):
    current_version: str
    latest_version: str
    update_available: bool
    release_url: str = ""


def version_info() -> str:
    return f"monitorly-probe {__version__} ({platform.python_implementation()} {platform.python_version()} {platform.system().lower()}/{platform.machine()})"


def parse_version(text: str) -> tuple[int, ...]:
    """``v1.2.3`` -> (1, 2, 3). Pre-release suffixes are ignored."""
    match = re.match(r"^v?(\d+(?:\.\d+)*)", text.strip())
    if not match:
        raise ValueError(f"invalid version: {text!r}")
    return tuple(int(part) for part in match.group(1).split("."))


def is_newer(latest: str, current: str) -> bool:
    a, b = parse_version(latest), parse_version(current)
    width = max(len(a), len(b))
    return a + (0,) * (width - len(a)) > b + (0,) * (width - len(b))


async def fetch_latest_release(
    repo: str = settings.update_repo,
    base_url: str = GITHUB_API_URL,
    timeout: float = 10.0,
) -> Release:
    """Fetch the latest release. Raises aiohttp.ClientError on HTTP failures."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    headers = {
        'Accept': 'application/vnd.github+json',
        'User-Agent': f'monitorly-probe/{__version__}',
    }
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(f"{base_url}/repos/{repo}/releases/latest", headers=headers) as response:
            response.raise_for_status()
            return Release.model_validate(await response.json())


async def check_for_updates(
    current: str = __version__,
    repo: str = settings.update_repo,
    base_url: str = GITHUB_API_URL,
) -> UpdateInfo:
    """Compare the running version with the latest published release."""
    release = await fetch_latest_release(repo=repo, base_url=base_url)
    latest = release.tag_name.lstrip("v")
    return UpdateInfo(
        current_version=current,
        latest_version=latest,
        update_available=is_newer(latest, current),
        release_url=release.html_url,
    )
