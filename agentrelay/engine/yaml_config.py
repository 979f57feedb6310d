"""YAML configuration loader.

Loads an optional ``relay.yaml``. Environment variables still win over
anything in the file, so a deployment can override single values
without editing it.

Example YAML:
    server:
      host: 0.0.0.0
      port: 3002
      keepalive_seconds: 30
      stream_poll_interval_seconds: 0.05

    agent:
      cwd: /workspace/project
      model: claude-sonnet-4-5-20250929
      cli_path: /usr/local/bin/claude
      max_thinking_tokens: 10000
      claude_projects_dir: ~/.claude/projects
      session_file: ~/.config/agentrelay/agent-session.json

    logging:
      level: DEBUG
      file: ~/.agentrelay/logs/agentrelay-server.log
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

# Config file names probed by discover_config_path(), in order.
CONFIG_FILENAMES = (".agentrelay/relay.yaml", "relay.yaml")


def _expand(value: object) -> object:
    if isinstance(value, str):
        return os.path.expanduser(os.path.expandvars(value))
    return value


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        logger.warning(
            "load_yaml_config: section %r is not a mapping (got %s); ignoring",
            name, type(section).__name__,
        )
        return {}
    return section


def load_yaml_config(path: str | Path) -> RelayConfig:
    """Load and parse a YAML config file into a RelayConfig.

    Unknown keys are ignored with a warning. Missing keys keep the
    dataclass defaults. Env overrides are not applied here; pass the
    result to ``RelayConfig.from_env(base=...)``.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level of a relay config must be a mapping")

    defaults = RelayConfig()
    server = _section(raw, "server")
    agent = _section(raw, "agent")
    logging_raw = _section(raw, "logging")

    known = {
        "server": {"host", "port", "keepalive_seconds", "stream_poll_interval_seconds"},
        "agent": {
            "cwd", "model", "cli_path", "max_thinking_tokens",
            "claude_projects_dir", "session_file", "default_session_id",
        },
        "logging": {"level", "file"},
    }
    for name, section in (("server", server), ("agent", agent), ("logging", logging_raw)):
        unknown = sorted(set(section) - known[name])
        if unknown:
            logger.warning(
                "load_yaml_config: ignoring unknown %s keys: %s",
                name, ", ".join(unknown),
            )

    config = RelayConfig(
        host=server.get("host", defaults.host),
        port=int(server.get("port", defaults.port)),
        keepalive_seconds=float(
            server.get("keepalive_seconds", defaults.keepalive_seconds)
        ),
        stream_poll_interval_seconds=float(server.get(
            "stream_poll_interval_seconds",
            defaults.stream_poll_interval_seconds,
        )),
        cwd=_expand(agent.get("cwd", defaults.cwd)),
        model=agent.get("model", defaults.model),
        default_session_id=agent.get(
            "default_session_id", defaults.default_session_id
        ),
        cli_path=_expand(agent.get("cli_path", defaults.cli_path)),
        max_thinking_tokens=int(
            agent.get("max_thinking_tokens", defaults.max_thinking_tokens)
        ),
        claude_projects_dir=_expand(
            agent.get("claude_projects_dir", defaults.claude_projects_dir)
        ),
        session_file=_expand(agent.get("session_file", defaults.session_file)),
        log_level=str(logging_raw.get("level", defaults.log_level)).upper(),
        log_file=_expand(logging_raw.get("file", defaults.log_file)),
    )
    logger.info(
        "Parsed YAML config %s sections: %s",
        path.name, ", ".join(sorted(raw.keys())) if raw else "(empty)",
    )
    return config


def discover_config_path(cwd: str | Path) -> Path | None:
    """Return the first relay config file found under *cwd*."""
    base = Path(cwd)
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.exists():
            return candidate
    return None


def load_config(path: str | Path | None = None, cwd: str | Path = ".") -> RelayConfig:
    """Load YAML (explicit or discovered), then apply RELAY_* env overrides."""
    config_path = Path(path) if path else discover_config_path(cwd)
    if config_path is None:
        logger.info("No relay config file found under %s; using defaults", cwd)
        return RelayConfig.from_env()
    return RelayConfig.from_env(base=load_yaml_config(config_path))
