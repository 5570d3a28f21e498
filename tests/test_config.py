"""Tests for YAML client configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from locshare_core import SharingSession, StaticLocationSource, StaticPermissionGate
from locshare_core.config import SharingConfig, load_config, parse_config
from locshare_core.errors import SharingConfigError


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "locshare.yaml"
    path.write_text(text)
    return path


def test_defaults(tmp_path):
    config = load_config(write(tmp_path, "relay_host: relay.local\n"))

    assert config == SharingConfig(relay_host="relay.local")
    assert config.relay_port == 3000
    assert config.publish_interval == 5.0


def test_all_fields(tmp_path):
    path = write(
        tmp_path,
        """
relay_host: 10.0.0.2
relay_port: 8080
relay_path: /relay
ping_interval: 10
connect_timeout: 3
publish_interval: 2.5
retry_base_delay: 1
retry_max_delay: 30
unknown_key: ignored
""",
    )
    config = load_config(str(path))

    assert config.relay_port == 8080
    assert config.relay_path == "/relay"
    assert config.connect_timeout == 3.0
    assert isinstance(config.connect_timeout, float)
    assert config.publish_interval == 2.5
    assert config.retry_max_delay == 30


def test_missing_file(tmp_path):
    with pytest.raises(SharingConfigError, match="File not found"):
        load_config(tmp_path / "missing.yaml")


def test_invalid_yaml(tmp_path):
    with pytest.raises(SharingConfigError, match="Invalid YAML"):
        load_config(write(tmp_path, "relay_host: [unclosed\n"))


def test_non_mapping(tmp_path):
    with pytest.raises(SharingConfigError, match="mapping"):
        load_config(write(tmp_path, "- a\n- b\n"))


def test_empty_file_requires_host(tmp_path):
    with pytest.raises(SharingConfigError, match="relay_host"):
        load_config(write(tmp_path, ""))


@pytest.mark.parametrize(
    "data",
    [
        {"relay_host": "h", "relay_port": 0},
        {"relay_host": "h", "relay_port": "80"},
        {"relay_host": "h", "ping_interval": True},
        {"relay_host": "h", "publish_interval": -1},
        {"relay_host": "h", "connect_timeout": "soon"},
        {"relay_host": "h", "relay_path": 5},
        {"relay_host": "h", "retry_base_delay": 10, "retry_max_delay": 5},
    ],
)
def test_invalid_values(data):
    with pytest.raises(SharingConfigError):
        parse_config(data)


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        parse_config({})


def test_session_from_config():
    config = SharingConfig(relay_host="relay.local", relay_port=4000, publish_interval=1.0)
    session = SharingSession.from_config(
        config, StaticPermissionGate(), StaticLocationSource(0.0, 0.0)
    )

    assert session.host == "relay.local"
    assert session.port == 4000
    assert session.publisher.interval == 1.0
