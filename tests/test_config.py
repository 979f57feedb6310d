from __future__ import annotations

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest
import yaml

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.yaml_config import discover_config_path, load_config, load_yaml_config


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if not k.startswith("RELAY_") and k != "CLAUDE_CLI_PATH"}


def test_defaults() -> None:
    config = RelayConfig()
    assert config.host == "127.0.0.1"
    assert config.port == 3002
    assert config.default_session_id == "default"
    assert config.stream_poll_interval_seconds == 0.05


def test_from_env_overrides() -> None:
    env = {
        **_clean_env(),
        "RELAY_PORT": "4000",
        "RELAY_MODEL": "claude-sonnet-4-5",
        "RELAY_LOG_LEVEL": "debug",
        "CLAUDE_CLI_PATH": "/opt/claude",
    }
    with patch.dict(os.environ, env, clear=True):
        config = RelayConfig.from_env()
    assert config.port == 4000
    assert config.model == "claude-sonnet-4-5"
    assert config.log_level == "DEBUG"
    assert config.cli_path == "/opt/claude"
    assert config.host == "127.0.0.1"


def test_yaml_config_sections() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "relay.yaml"
        path.write_text(yaml.safe_dump({
            "server": {"host": "0.0.0.0", "port": 3100, "keepalive_seconds": 5},
            "agent": {"cwd": "/workspace", "model": "opus", "unknown_key": 1},
            "logging": {"level": "warning"},
        }), encoding="utf-8")

        config = load_yaml_config(path)

    assert config.host == "0.0.0.0"
    assert config.port == 3100
    assert config.keepalive_seconds == 5.0
    assert config.cwd == "/workspace"
    assert config.model == "opus"
    assert config.log_level == "WARNING"


def test_yaml_top_level_must_be_mapping() -> None:
    with TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "relay.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_yaml_config(path)


def test_load_config_env_wins_over_yaml() -> None:
    with TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "relay.yaml").write_text("server:\n  port: 3100\n", encoding="utf-8")
        assert discover_config_path(tmpdir) == Path(tmpdir) / "relay.yaml"

        with patch.dict(os.environ, {**_clean_env(), "RELAY_PORT": "3200"}, clear=True):
            config = load_config(cwd=tmpdir)
        assert config.port == 3200

        with patch.dict(os.environ, _clean_env(), clear=True):
            config = load_config(cwd=tmpdir)
        assert config.port == 3100


def test_load_config_without_file_uses_defaults() -> None:
    with TemporaryDirectory() as tmpdir:
        assert discover_config_path(tmpdir) is None
        with patch.dict(os.environ, _clean_env(), clear=True):
            config = load_config(cwd=tmpdir)
        assert config.port == 3002
