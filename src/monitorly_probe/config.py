"""
Probe Configuration.

YAML-backed configuration for collectors, sender target, API credentials
and log paths. Also merges configuration pushed by the server.
"""

import copy
import dataclasses
import os
import re
import socket
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union
import yaml

from .encryption import validate_key

DEFAULT_CONFIG_NAME = "config.yaml"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ProbeError(Exception):
    """Base class for probe errors."""


class ConfigError(ProbeError):
    """Raised when the configuration cannot be loaded or is invalid."""


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) or Go-style strings such as
    ``500ms``, ``30s``, ``5m`` or ``1h30m``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def format_duration(seconds: float) -> str:
    """Render seconds the way they are written in the YAML file."""
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    if seconds == int(seconds):
        return f"{int(seconds)}s"
    return f"{int(seconds * 1000)}ms"


@dataclass
class CollectorConfig:
    """Configuration for individual collectors."""
    enabled: bool = True
    interval: float = 30.0  # seconds


@dataclass
class MountPoint:
    """A disk mount point to watch."""
    path: str = ""
    label: str = ""
    collect_usage: bool = True
    collect_percent: bool = True


@dataclass
class DiskCollectorConfig(CollectorConfig):
    """Disk collector config."""
    interval: float = 60.0
    mount_points: list[MountPoint] = field(default_factory=lambda: [
        MountPoint(path="/", label="root"),
    ])


@dataclass
class Service:
    """A service whose status is checked."""
    name: str = ""
    label: str = ""


@dataclass
class ServiceCollectorConfig(CollectorConfig):
    """Service status collector config."""
    enabled: bool = False
    interval: float = 60.0
    services: list[Service] = field(default_factory=list)


@dataclass
class CollectionConfig:
    """All collector configs."""
    cpu: CollectorConfig = field(default_factory=CollectorConfig)
    ram: CollectorConfig = field(default_factory=CollectorConfig)
    disk: DiskCollectorConfig = field(default_factory=DiskCollectorConfig)
    service: ServiceCollectorConfig = field(default_factory=ServiceCollectorConfig)
    user_activity: CollectorConfig = field(
        default_factory=lambda: CollectorConfig(enabled=False, interval=60.0))
    login_failures: CollectorConfig = field(
        default_factory=lambda: CollectorConfig(enabled=False, interval=300.0))
    port: CollectorConfig = field(
        default_factory=lambda: CollectorConfig(enabled=False, interval=300.0))


@dataclass
class SenderConfig:
    """Where and how often batches are sent."""
    target: str = "api"  # api | log_file
    send_interval: float = 300.0


@dataclass
class APIConfig:
    """Remote API connection."""
    url: str = ""
    organization_id: str = ""
    server_id: str = ""
    application_token: str = ""
    encryption_key: str = ""
    config_last_update: Optional[str] = None  # RFC3339

    @property
    def project_path(self) -> str:
        """Path segment identifying this server under the API base URL."""
        if self.server_id:
            return f"{self.organization_id}/{self.server_id}"
        return self.organization_id

    def last_update_time(self) -> Optional[datetime]:
        if not self.config_last_update:
            return None
        return parse_timestamp(self.config_last_update)


@dataclass
class LogFileConfig:
    """Local metrics file used by the log_file sender."""
    path: str = "logs/metrics.log"


@dataclass
class LoggingConfig:
    """Probe log output."""
    file_path: str = "logs/monitorly.log"


@dataclass
class UpdatesConfig:
    """Release check at startup."""
    enabled: bool = False


@dataclass
class ProbeConfig:
    """Main probe configuration."""
    machine_name: str = ""

    collection: CollectionConfig = field(default_factory=CollectionConfig)
    sender: SenderConfig = field(default_factory=SenderConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log_file: LogFileConfig = field(default_factory=LogFileConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    updates: UpdatesConfig = field(default_factory=UpdatesConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "ProbeConfig":
        """Load, default and validate configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"failed to read config file: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to parse config file: {e}") from e

        try:
            config = cls._from_dict(data or {})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid config file: {e}") from e
        config.validate()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "ProbeConfig":
        """Create config from dictionary."""
        if not isinstance(data, dict):
            raise ConfigError("config file must contain a mapping")

        config = cls()

        if data.get("machine_name"):
            config.machine_name = str(data["machine_name"])

        collection = _section(data, "collection")
        for name in ("cpu", "ram", "user_activity", "login_failures", "port"):
            if name in collection:
                current = getattr(config.collection, name)
                setattr(config.collection, name, _collector(_section(collection, name), current))

        if "disk" in collection:
            raw = _section(collection, "disk")
            disk = _collector(raw, config.collection.disk)
            if raw.get("mount_points"):
                disk.mount_points = [MountPoint(**mp) for mp in raw["mount_points"]]
            config.collection.disk = disk

        if "service" in collection:
            raw = _section(collection, "service")
            service = _collector(raw, config.collection.service)
            service.services = [Service(**svc) for svc in raw.get("services") or []]
            config.collection.service = service

        sender = _section(data, "sender")
        if sender.get("target"):
            config.sender.target = sender["target"]
        if sender.get("send_interval") is not None:
            config.sender.send_interval = parse_duration(sender["send_interval"])

        api = _section(data, "api")
        for key in ("url", "organization_id", "server_id", "application_token", "encryption_key"):
            if api.get(key) is not None:
                setattr(config.api, key, str(api[key]))
        if api.get("config_last_update"):
            last = api["config_last_update"]
            if isinstance(last, datetime):
                # PyYAML may hand back a naive UTC datetime
                if last.tzinfo is None:
                    last = last.replace(tzinfo=timezone.utc)
                last = last.isoformat()
            config.api.config_last_update = str(last)

        if _section(data, "log_file").get("path"):
            config.log_file.path = data["log_file"]["path"]
        if _section(data, "logging").get("file_path"):
            config.logging.file_path = data["logging"]["file_path"]
        if "updates" in data:
            config.updates = UpdatesConfig(enabled=bool(_section(data, "updates").get("enabled", False)))

        return config

    def validate(self) -> None:
        """Check the configuration, raising ConfigError on the first problem."""
        if self.sender.target == "api":
            if not self.api.url:
                raise ConfigError("API URL is required when sender target is set to 'api'")
            if not self.api.organization_id:
                raise ConfigError("organization ID is required when sender target is set to 'api'")
            if not self.api.application_token:
                raise ConfigError("application token is required when sender target is set to 'api'")
            if self.api.encryption_key:
                try:
                    validate_key(self.api.encryption_key)
                except ValueError as e:
                    raise ConfigError(str(e)) from e
            if self.api.config_last_update:
                try:
                    parse_timestamp(self.api.config_last_update)
                except ValueError as e:
                    raise ConfigError(f"invalid api.config_last_update: {e}") from e
        elif self.sender.target != "log_file":
            raise ConfigError(
                f"invalid sender target: {self.sender.target} (must be 'api' or 'log_file')"
            )

        for name, collector in self.collectors():
            if collector.enabled and collector.interval < 1:
                raise ConfigError(f"{name} collection interval must be at least 1 second")

        if self.sender.send_interval < 1:
            raise ConfigError("send interval must be at least 1 second")

        for i, mp in enumerate(self.collection.disk.mount_points, 1):
            if not mp.path:
                raise ConfigError(f"mount point #{i} is missing a path")
            if not mp.label:
                raise ConfigError(f"mount point #{i} is missing a label")
            if not mp.collect_usage and not mp.collect_percent:
                raise ConfigError(
                    f"mount point {mp.path} must have at least one collection method enabled"
                )

        if self.collection.service.enabled and not self.collection.service.services:
            raise ConfigError("service collection is enabled but no services are configured")
        for i, svc in enumerate(self.collection.service.services, 1):
            if not svc.name:
                raise ConfigError(f"service #{i} is missing a name")

    def collectors(self) -> list[tuple[str, CollectorConfig]]:
        """(name, config) for every collector kind."""
        return [(f.name, getattr(self.collection, f.name)) for f in dataclasses.fields(CollectionConfig)]

    def get_machine_name(self) -> str:
        """Configured machine name, or the host name."""
        return self.machine_name or socket.gethostname()

    def to_dict(self) -> dict:
        """Convert to the YAML layout."""
        data = dataclasses.asdict(self)
        for name, _ in self.collectors():
            data["collection"][name]["interval"] = format_duration(data["collection"][name]["interval"])
        data["sender"]["send_interval"] = format_duration(data["sender"]["send_interval"])
        if not data["api"]["config_last_update"]:
            del data["api"]["config_last_update"]
        return data

    def to_yaml(self, path: str) -> None:
        """Save configuration to YAML file."""
        _write_yaml_atomic(path, self.to_dict())


def _section(data: dict, name: str) -> dict:
    """A nested mapping from raw config; missing or empty gives {}."""
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def _collector(raw: dict, current: CollectorConfig) -> Any:
    """Overlay a raw collector mapping on its defaulted dataclass."""
    result = copy.deepcopy(current)
    if "enabled" in raw:
        result.enabled = bool(raw["enabled"])
    if raw.get("interval") is not None:
        result.interval = parse_duration(raw["interval"])
    return result


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp (``Z`` suffix allowed)."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp has no timezone: {value}")
    return parsed


def search_paths(config_flag: str) -> list[str]:
    """Locations to look for the config file, in order."""
    paths = [config_flag]
    home = Path.home()
    paths.append(str(home / ".monitorly" / DEFAULT_CONFIG_NAME))
    paths.extend([
        DEFAULT_CONFIG_NAME,
        os.path.join("configs", DEFAULT_CONFIG_NAME),
        "/etc/monitorly/config.yaml",
    ])
    return paths


def find_config_file(config_flag: str = DEFAULT_CONFIG_NAME) -> str:
    """Return the absolute path of the first existing config file."""
    if config_flag != DEFAULT_CONFIG_NAME and not Path(config_flag).expanduser().is_file():
        raise ConfigError(f"specified config file not found: {config_flag}")

    for path in search_paths(config_flag):
        candidate = Path(path).expanduser().resolve()
        if candidate.is_file():
            return str(candidate)

    raise ConfigError("no config file found in search paths")


def merge_remote_config(path: str, remote: dict, last_update: datetime) -> ProbeConfig:
    """
    Merge configuration pushed by the server into the local YAML file.

    API credentials are kept from the local file. The merged result is
    validated before the file is replaced; on failure the file is untouched.
    """
    if not isinstance(remote, dict):
        raise ConfigError("remote configuration must be a mapping")

    try:
        with open(path, 'r') as f:
            local = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read local config: {e}") from e

    remote = copy.deepcopy(remote)
    remote.pop("api", None)
    merged = _deep_merge(local, remote)
    if not isinstance(merged.get("api"), dict):
        merged["api"] = {}
    merged["api"]["config_last_update"] = last_update.isoformat()

    try:
        config = ProbeConfig._from_dict(merged)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid remote configuration: {e}") from e
    config.validate()

    try:
        _write_yaml_atomic(path, merged)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to save merged config: {e}") from e
    return config


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _write_yaml_atomic(path: str, data: dict) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
    try:
        with os.fdopen(fd, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
