"""Tests for probe configuration."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from monitorly_probe.config import (
    ConfigError,
    ProbeConfig,
    find_config_file,
    format_duration,
    merge_remote_config,
    parse_duration,
    parse_timestamp,
)

VALID_API = {
    "url": "https://api.example.com/v1",
    "organization_id": "org-1",
    "application_token": "token-123",
}


def write_config(tmp_path, data, name="config.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.mark.parametrize("value,expected", [
    ("30s", 30.0),
    ("5m", 300.0),
    ("1h30m", 5400.0),
    ("500ms", 0.5),
    ("45", 45.0),
    (10, 10.0),
    (2.5, 2.5),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "5 minutes", "m5", "10x", True])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_format_duration():
    assert format_duration(300.0) == "5m"
    assert format_duration(30.0) == "30s"
    assert format_duration(0.5) == "500ms"


def test_parse_timestamp_requires_timezone():
    assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        parse_timestamp("2026-01-01T00:00:00")


class TestLoading:

    def test_defaults(self, tmp_path):
        config = ProbeConfig.from_yaml(write_config(tmp_path, {"api": VALID_API}))

        assert config.sender.target == "api"
        assert config.sender.send_interval == 300.0
        assert config.collection.cpu.enabled and config.collection.cpu.interval == 30.0
        assert config.collection.disk.interval == 60.0
        assert config.collection.disk.mount_points[0].path == "/"
        assert config.collection.disk.mount_points[0].label == "root"
        assert not config.collection.service.enabled
        assert not config.collection.port.enabled
        assert config.collection.login_failures.interval == 300.0
        assert config.log_file.path == "logs/metrics.log"

    def test_overrides(self, tmp_path):
        path = write_config(tmp_path, {
            "machine_name": "db-01",
            "collection": {
                "cpu": {"interval": "10s"},
                "disk": {"mount_points": [{"path": "/data", "label": "data", "collect_usage": False}]},
                "service": {"enabled": True, "services": [{"name": "nginx", "label": "web"}]},
                "port": {"enabled": True},
            },
            "sender": {"send_interval": "1m"},
            "api": {**VALID_API, "server_id": "srv-9"},
        })

        config = ProbeConfig.from_yaml(path)

        assert config.get_machine_name() == "db-01"
        assert config.collection.cpu.interval == 10.0
        assert config.collection.disk.mount_points[0].path == "/data"
        assert not config.collection.disk.mount_points[0].collect_usage
        assert config.collection.service.services[0].name == "nginx"
        assert config.collection.port.enabled
        assert config.collection.port.interval == 300.0
        assert config.sender.send_interval == 60.0
        assert config.api.project_path == "org-1/srv-9"

    def test_project_path_without_server_id(self, tmp_path):
        config = ProbeConfig.from_yaml(write_config(tmp_path, {"api": VALID_API}))
        assert config.api.project_path == "org-1"

    def test_yaml_datetime_last_update(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "api:\n"
            "  url: https://api.example.com\n"
            "  organization_id: org-1\n"
            "  application_token: t\n"
            "  config_last_update: 2026-01-01T10:00:00Z\n"
        )

        config = ProbeConfig.from_yaml(str(path))

        assert config.api.last_update_time() == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("data,message", [
        ({"api": {"organization_id": "o", "application_token": "t"}}, "API URL is required"),
        ({"api": {"url": "u", "application_token": "t"}}, "organization ID"),
        ({"api": {"url": "u", "organization_id": "o"}}, "application token"),
        ({"api": {**VALID_API, "encryption_key": "short"}}, "exactly 32 bytes"),
        ({"sender": {"target": "s3"}}, "invalid sender target"),
        ({"api": VALID_API, "sender": {"send_interval": "500ms"}}, "send interval"),
        ({"api": VALID_API, "collection": {"ram": {"interval": "0s"}}}, "ram collection interval"),
        ({"api": VALID_API, "collection": {"service": {"enabled": True}}}, "no services"),
        ({"api": VALID_API, "collection": {"disk": {"mount_points": [{"path": "/"}]}}}, "missing a label"),
        ({"api": VALID_API, "collection": {"disk": {"mount_points": [
            {"path": "/", "label": "r", "collect_usage": False, "collect_percent": False}]}}}, "at least one"),
    ])
    def test_validation_errors(self, tmp_path, data, message):
        with pytest.raises(ConfigError, match=message):
            ProbeConfig.from_yaml(write_config(tmp_path, data))

    @pytest.mark.parametrize("text", [
        "sender: fast\n",
        "api: [a, b]\n",
        "collection: 5\n",
        "collection:\n  cpu: on\n",
        "collection:\n  disk: root\n",
        "log_file: metrics.log\n",
    ])
    def test_non_mapping_section(self, tmp_path, text):
        path = tmp_path / "config.yaml"
        path.write_text(text)
        with pytest.raises(ConfigError, match="must be a mapping"):
            ProbeConfig.from_yaml(str(path))

    def test_log_file_target_needs_no_api(self, tmp_path):
        config = ProbeConfig.from_yaml(write_config(tmp_path, {"sender": {"target": "log_file"}}))
        assert config.sender.target == "log_file"

    def test_unparseable_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("api: [unclosed\n")
        with pytest.raises(ConfigError, match="failed to parse"):
            ProbeConfig.from_yaml(str(path))

    def test_round_trip_through_yaml(self, tmp_path):
        original = ProbeConfig.from_yaml(write_config(tmp_path, {"api": VALID_API}))
        saved = tmp_path / "saved.yaml"

        original.to_yaml(str(saved))

        assert ProbeConfig.from_yaml(str(saved)) == original


class TestFindConfigFile:

    def test_explicit_path(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API}, name="probe.yaml")
        assert find_config_file(path) == str(Path(path).resolve())

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="specified config file not found"):
            find_config_file(str(tmp_path / "nope.yaml"))


class TestMergeRemoteConfig:

    def test_merges_and_keeps_credentials(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API, "collection": {"cpu": {"interval": "30s"}}})
        stamp = datetime(2026, 5, 1, tzinfo=timezone.utc)

        config = merge_remote_config(path, {
            "collection": {"port": {"enabled": True}},
            "api": {"application_token": "stolen"},
        }, stamp)

        assert config.collection.port.enabled
        assert config.collection.cpu.interval == 30.0
        assert config.api.application_token == "token-123"
        assert config.api.last_update_time() == stamp
        reloaded = ProbeConfig.from_yaml(path)
        assert reloaded.collection.port.enabled
        assert reloaded.api.last_update_time() == stamp

    def test_invalid_remote_leaves_file_untouched(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API})
        with open(path) as f:
            before = f.read()

        with pytest.raises(ConfigError):
            merge_remote_config(path, {"sender": {"send_interval": "0s"}}, datetime.now(timezone.utc))

        with open(path) as f:
            assert f.read() == before

    def test_non_mapping_rejected(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API})
        with pytest.raises(ConfigError):
            merge_remote_config(path, ["nope"], datetime.now(timezone.utc))

    def test_non_mapping_remote_section(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API})
        with open(path) as f:
            before = f.read()

        with pytest.raises(ConfigError, match="'sender' must be a mapping"):
            merge_remote_config(path, {"sender": "fast"}, datetime.now(timezone.utc))

        with open(path) as f:
            assert f.read() == before

    def test_write_failure_is_config_error(self, tmp_path):
        path = write_config(tmp_path, {"api": VALID_API})
        with open(path) as f:
            before = f.read()

        with patch("monitorly_probe.config.os.replace", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(ConfigError, match="failed to save merged config"):
                merge_remote_config(path, {"sender": {"send_interval": "2m"}}, datetime.now(timezone.utc))

        with open(path) as f:
            assert f.read() == before
        assert sorted(p.name for p in tmp_path.iterdir()) == ["config.yaml"]
