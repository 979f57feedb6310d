"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _default_projects_dir() -> str:
    return str(Path.home() / ".claude" / "projects")


def _default_session_file() -> str:
    return str(Path.home() / ".config" / "agentrelay" / "agent-session.json")


@dataclass
class RelayConfig:
    """Relay server and agent configuration."""

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3002

    # Working directory the agent runs in. Also selects the on-disk
    # log directory under claude_projects_dir.
    cwd: str = "."
    model: str | None = None
    default_session_id: str = "default"

    # Where the Claude CLI appends its per-session JSONL logs.
    claude_projects_dir: str = field(default_factory=_default_projects_dir)
    # Local session id <-> Claude session id mapping.
    session_file: str = field(default_factory=_default_session_file)
    # Explicit Claude CLI binary; None means search PATH.
    cli_path: str | None = None
    max_thinking_tokens: int = 10000

    # SSE readers poll the completion buffer at this interval.
    stream_poll_interval_seconds: float = 0.05
    # Comment frame sent to idle SSE readers.
    keepalive_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls, base: RelayConfig | None = None) -> RelayConfig:
        """Load configuration from RELAY_* environment variables.

        Values not set in the environment come from *base* (for example
        a config parsed from YAML), or from the dataclass defaults.
        """
        base = base or cls()
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        config = cls(
            host=os.getenv("RELAY_HOST", base.host),
            port=int(os.getenv("RELAY_PORT", str(base.port))),
            cwd=os.getenv("RELAY_CWD", base.cwd),
            model=os.getenv("RELAY_MODEL") or base.model,
            default_session_id=os.getenv(
                "RELAY_DEFAULT_SESSION_ID", base.default_session_id
            ),
            claude_projects_dir=os.getenv(
                "RELAY_CLAUDE_PROJECTS_DIR", base.claude_projects_dir
            ),
            session_file=os.getenv("RELAY_SESSION_FILE", base.session_file),
            cli_path=os.getenv("CLAUDE_CLI_PATH") or base.cli_path,
            max_thinking_tokens=int(os.getenv(
                "RELAY_MAX_THINKING_TOKENS", str(base.max_thinking_tokens)
            )),
            stream_poll_interval_seconds=float(os.getenv(
                "RELAY_STREAM_POLL_INTERVAL",
                str(base.stream_poll_interval_seconds),
            )),
            keepalive_seconds=float(os.getenv(
                "RELAY_SSE_KEEPALIVE", str(base.keepalive_seconds)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", base.log_level).upper(),
            log_file=os.getenv("RELAY_LOG_FILE") or base.log_file,
        )
        logger.info(
            "RelayConfig.from_env: host=%s port=%d cwd=%s model=%s",
            config.host, config.port, config.cwd, config.model or "<default>",
        )
        return config

    @property
    def resolved_cwd(self) -> str:
        return str(Path(self.cwd).expanduser().resolve())
