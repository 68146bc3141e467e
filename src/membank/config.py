"""Configuration loading from environment variables and membank.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_CONFIG_FILENAME = "membank.toml"
_DATA_DIRNAME = ".membank"
_DB_FILENAME = "memory.db"


@dataclass
class StorageConfig:
    """Where the data file lives and how recovery snapshots are kept."""

    workspace_root: Path = field(default_factory=Path.cwd)
    data_path: Path | None = None
    snapshot_keep: int = 5
    snapshot_max_age_hours: int = 24

    @property
    def resolved_data_path(self) -> Path:
        if self.data_path is not None:
            return self.data_path
        return self.workspace_root / _DATA_DIRNAME / _DB_FILENAME


@dataclass
class TokenConfig:
    """Token counting and budgeting."""

    model: str = "claude-sonnet-4-5"
    anthropic_api_key: str | None = None
    cache_size: int = 50
    cache_ttl: float = 300.0
    chars_per_token: float = 4.0
    estimate_margin: float = 1.1
    context_window: int = 200_000


@dataclass
class MetricsConfig:
    """Sampled operational telemetry."""

    sample_rate: float = 0.2
    debug: bool = False
    queue_size: int = 1000
    cache_seconds: float = 30.0


@dataclass
class MembankConfig:
    """Top-level membank configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    tokens: TokenConfig = field(default_factory=TokenConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        return self.storage.resolved_data_path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: Path | None = None) -> MembankConfig:
    """Load configuration from environment variables and optional membank.toml.

    Priority: environment variables > membank.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.membank/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / _DATA_DIRNAME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    tokens_data = file_data.get("tokens", {})
    metrics_data = file_data.get("metrics", {})

    data_path = os.getenv("MEMBANK_DATA_PATH", storage_data.get("data_path"))
    workspace = os.getenv("MEMBANK_WORKSPACE", storage_data.get("workspace_root"))

    config = MembankConfig(
        storage=StorageConfig(
            workspace_root=Path(workspace) if workspace else Path.cwd(),
            data_path=Path(data_path) if data_path else None,
            snapshot_keep=int(storage_data.get("snapshot_keep", 5)),
            snapshot_max_age_hours=int(storage_data.get("snapshot_max_age_hours", 24)),
        ),
        tokens=TokenConfig(
            model=os.getenv("MEMBANK_MODEL", tokens_data.get("model", "claude-sonnet-4-5")),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            cache_size=int(tokens_data.get("cache_size", 50)),
            cache_ttl=float(tokens_data.get("cache_ttl", 300.0)),
            chars_per_token=float(tokens_data.get("chars_per_token", 4.0)),
            estimate_margin=float(tokens_data.get("estimate_margin", 1.1)),
            context_window=int(tokens_data.get("context_window", 200_000)),
        ),
        metrics=MetricsConfig(
            sample_rate=float(
                os.getenv("MEMBANK_METRICS_SAMPLE_RATE", metrics_data.get("sample_rate", 0.2))
            ),
            debug=_env_bool("MEMBANK_DEBUG", bool(metrics_data.get("debug", False))),
            queue_size=int(metrics_data.get("queue_size", 1000)),
            cache_seconds=float(metrics_data.get("cache_seconds", 30.0)),
        ),
        log_level=os.getenv("MEMBANK_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    if config.tokens.cache_size < 0:
        raise ValueError(f"tokens.cache_size must be >= 0, got {config.tokens.cache_size}")
    return config
