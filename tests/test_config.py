"""Tests for configuration loading."""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from painpoint.config import Config, load_config
from painpoint.errors import ConfigurationError


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PAINPOINT_DB_PATH", raising=False)

    config = load_config()

    assert config.database.path == "./painpoint.db"
    assert config.enrich.batch_size == 10
    assert config.trigger.rate_limit == 3
    assert config.cluster.threshold == 0.6


def test_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "enrich:\n  batch_size: 25\n  unknown_key: 1\n"
        "cluster:\n  min_size: 4\n"
        "scheduler:\n  enabled: true\n  enrich: '*/5 * * * *'\n"
    )

    config = load_config(path)

    assert config.enrich.batch_size == 25
    assert config.enrich.concurrency == 3
    assert config.cluster.min_size == 4
    assert config.scheduler.enrich == "*/5 * * * *"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("PAINPOINT_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("PAINPOINT_CONCURRENCY", "7")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.database.path == str(tmp_path / "env.db")
    assert config.enrich.concurrency == 7
    assert config.credentials.has_ai_key()


def test_bad_env_value(tmp_path, monkeypatch):
    monkeypatch.setenv("PAINPOINT_BATCH_SIZE", "many")
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ConfigurationError) as exc_info:
        load_config()
    assert exc_info.value.key == "PAINPOINT_BATCH_SIZE"


def test_validate():
    config = Config()
    config.enrich.concurrency = 0
    with pytest.raises(ConfigurationError):
        config.validate()

    config = Config()
    config.database.path = ""
    with pytest.raises(ConfigurationError):
        config.validate()
