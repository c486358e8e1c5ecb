"""Engine configuration.

Loads from ~/.taskforce/engine.yaml with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# (attribute, env var, type) for every setting that can be overridden
_SETTINGS: list[tuple[str, str, type]] = [
    ("db_path", "TASKFORCE_DB_PATH", str),
    ("queue_name", "TASKFORCE_QUEUE_NAME", str),
    ("job_name", "TASKFORCE_JOB_NAME", str),
    ("durable_transport", "TASKFORCE_DURABLE_TRANSPORT", bool),
    ("transport_timeout", "TASKFORCE_TRANSPORT_TIMEOUT", float),
    ("transport_poll_interval", "TASKFORCE_TRANSPORT_POLL_INTERVAL", float),
    ("transport_concurrency", "TASKFORCE_TRANSPORT_CONCURRENCY", int),
    ("stalled_interval", "TASKFORCE_STALLED_INTERVAL", float),
    ("recovery_probe_interval", "TASKFORCE_RECOVERY_PROBE_INTERVAL", float),
    ("max_history", "TASKFORCE_MAX_HISTORY", int),
    ("history_trim_ratio", "TASKFORCE_HISTORY_TRIM_RATIO", float),
    ("history_description_limit", "TASKFORCE_HISTORY_DESCRIPTION_LIMIT", int),
    ("default_max_retries", "TASKFORCE_DEFAULT_MAX_RETRIES", int),
    ("auto_retry", "TASKFORCE_AUTO_RETRY", bool),
    ("retry_backoff", "TASKFORCE_RETRY_BACKOFF", float),
    ("overloaded_threshold", "TASKFORCE_OVERLOADED_THRESHOLD", int),
    ("underloaded_threshold", "TASKFORCE_UNDERLOADED_THRESHOLD", int),
    ("persist_snapshots", "TASKFORCE_PERSIST_SNAPSHOTS", bool),
]


def _coerce(value: object, kind: type) -> object:
    if kind is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    return kind(value)


@dataclass
class EngineConfig:
    """Configuration for the task scheduling engine."""

    db_path: str = ".taskforce/taskforce.db"
    queue_name: str = "taskforce-tasks"
    job_name: str = "task"
    durable_transport: bool = True
    transport_timeout: float = 2.0  # seconds, bounds enqueue/list/remove
    transport_poll_interval: float = 0.5
    transport_concurrency: int = 4
    stalled_interval: float = 30.0
    recovery_probe_interval: float = 30.0  # 0 keeps fallback one-way
    max_history: int = 1000
    history_trim_ratio: float = 0.8
    history_description_limit: int = 500
    default_max_retries: int = 3
    auto_retry: bool = True
    retry_backoff: float = 2.0  # seconds, doubled per attempt
    overloaded_threshold: int = 80
    underloaded_threshold: int = 20
    persist_snapshots: bool = True

    CONFIG_FILE: Path = field(
        default_factory=lambda: Path.home() / ".taskforce" / "engine.yaml",
        repr=False,
    )

    @classmethod
    def load(cls, config_path: Path | None = None) -> EngineConfig:
        """Load engine config from file and environment variables.

        Priority (highest wins):
          1. Environment variables (TASKFORCE_DB_PATH, TASKFORCE_AUTO_RETRY, etc.)
          2. Config file (~/.taskforce/engine.yaml or custom path)
          3. Defaults

        Args:
            config_path: Optional path to a YAML config file.

        Returns:
            Populated EngineConfig instance.
        """
        config = cls()
        file_path = config_path or config.CONFIG_FILE

        if file_path.exists():
            try:
                with open(file_path) as f:
                    data = yaml.safe_load(f) or {}

                for attr, _, kind in _SETTINGS:
                    if attr in data:
                        setattr(config, attr, _coerce(data[attr], kind))
            except (yaml.YAMLError, OSError, ValueError, TypeError, AttributeError):
                pass

        for attr, env_var, kind in _SETTINGS:
            if env_value := os.environ.get(env_var):
                setattr(config, attr, _coerce(env_value, kind))

        return config

    def save(self, config_path: Path | None = None) -> None:
        """Save current config to file.

        Args:
            config_path: Optional path override.
        """
        file_path = config_path or self.CONFIG_FILE
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    def to_dict(self) -> dict[str, object]:
        return {attr: getattr(self, attr) for attr, _, _ in _SETTINGS}
