"""Tests for configuration loading."""

import pytest
from pathlib import Path

from membank.config import MembankConfig, load_config

ENV_KEYS = [
    "MEMBANK_WORKSPACE",
    "MEMBANK_DATA_PATH",
    "MEMBANK_LOG_LEVEL",
    "MEMBANK_MODEL",
    "MEMBANK_METRICS_SAMPLE_RATE",
    "MEMBANK_DEBUG",
    "ANTHROPIC_API_KEY",
]


@pytest.fixture(autouse=True)
def clean_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestConfig:
    def test_defaults(self, tmp_path: Path):
        config = load_config()
        assert config.tokens.model == "claude-sonnet-4-5"
        assert config.tokens.cache_size == 50
        assert config.tokens.cache_ttl == 300.0
        assert config.metrics.sample_rate == 0.2
        assert config.metrics.debug is False
        assert config.data_path == tmp_path / ".membank" / "memory.db"

    def test_env_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MEMBANK_MODEL", "gpt-4o")
        monkeypatch.setenv("MEMBANK_METRICS_SAMPLE_RATE", "1.0")
        monkeypatch.setenv("MEMBANK_DEBUG", "true")
        monkeypatch.setenv("MEMBANK_DATA_PATH", str(tmp_path / "custom.db"))

        config = load_config()
        assert config.tokens.model == "gpt-4o"
        assert config.metrics.sample_rate == 1.0
        assert config.metrics.debug is True
        assert config.data_path == tmp_path / "custom.db"

    def test_workspace_env(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MEMBANK_WORKSPACE", str(tmp_path / "ws"))
        config = load_config()
        assert config.data_path == tmp_path / "ws" / ".membank" / "memory.db"

    def test_toml_file(self, tmp_path: Path):
        toml_path = tmp_path / "membank.toml"
        toml_path.write_text("""
log_level = "DEBUG"

[storage]
snapshot_keep = 3

[tokens]
model = "claude-haiku-4-5"
chars_per_token = 3.5

[metrics]
sample_rate = 0.5
cache_seconds = 5
""")
        config = load_config(toml_path)
        assert config.log_level == "DEBUG"
        assert config.storage.snapshot_keep == 3
        assert config.tokens.model == "claude-haiku-4-5"
        assert config.tokens.chars_per_token == 3.5
        assert config.metrics.sample_rate == 0.5
        assert config.metrics.cache_seconds == 5.0

    def test_toml_discovered_in_cwd(self, tmp_path: Path):
        (tmp_path / "membank.toml").write_text('[tokens]\nmodel = "from-cwd"\n')
        config = load_config()
        assert config.tokens.model == "from-cwd"

    def test_env_overrides_toml(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MEMBANK_MODEL", "from-env")
        toml_path = tmp_path / "membank.toml"
        toml_path.write_text('[tokens]\nmodel = "from-toml"\n')
        config = load_config(toml_path)
        assert config.tokens.model == "from-env"  # env wins

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        assert load_config().tokens.anthropic_api_key == "sk-test"

    def test_dataclass_defaults_without_loading(self):
        config = MembankConfig()
        assert config.log_level == "INFO"
        assert config.storage.data_path is None

    def test_negative_cache_size_rejected(self, tmp_path: Path):
        toml_path = tmp_path / "membank.toml"
        toml_path.write_text("[tokens]\ncache_size = -5\n")
        with pytest.raises(ValueError, match="cache_size"):
            load_config(toml_path)

    def test_zero_cache_size_allowed(self, tmp_path: Path):
        toml_path = tmp_path / "membank.toml"
        toml_path.write_text("[tokens]\ncache_size = 0\n")
        assert load_config(toml_path).tokens.cache_size == 0
