"""
Configuration loading and validation.

Verifies that the shipped config.yaml loads, that values stay within their
validated ranges, and that process-start environment overrides win.
"""
import os
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from copytrader.config.config import Config, ExecutionConfig, SizingConfig, load_config
from copytrader.config.dotenv_loader import load_dotenv_files

CONFIG_PATH = Path(__file__).resolve().parents[2] / "copytrader" / "config" / "config.yaml"

_OVERRIDE_VARS = ("DRY_RUN", "MAX_RETRIES", "RETRY_BASE_DELAY_MS", "MIN_API_INTERVAL_MS", "DATABASE_URL", "ENVIRONMENT")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_yaml_exists():
    """Production startup depends on this file."""
    assert CONFIG_PATH.exists()


def test_default_path_loads():
    config = load_config()
    assert config.environment == "prod"


def test_execution_defaults():
    config = load_config(str(CONFIG_PATH))

    assert config.execution.dry_run is False
    assert config.execution.max_retries == 3
    assert config.execution.retry_base_delay_ms == 1000
    assert config.execution.min_api_interval_ms == 2000
    assert config.execution.margin_buffer == Decimal("1.10")


def test_sizing_overrides_loaded():
    config = load_config(str(CONFIG_PATH))

    assert "DOGE_USDT" in config.sizing.whole_quantity_pairs
    assert config.sizing.quantity_precision_overrides["SOL_USDT"] == 2


def test_database_url_absent_without_env():
    assert load_config(str(CONFIG_PATH)).data.database_url is None


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DRY_RUN", "true")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("MIN_API_INTERVAL_MS", "500")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///copytrader.db")
    monkeypatch.setenv("ENVIRONMENT", "dev")

    config = load_config(str(CONFIG_PATH))

    assert config.execution.dry_run is True
    assert config.execution.max_retries == 5
    assert config.execution.min_api_interval_ms == 500
    assert config.data.database_url == "sqlite:///copytrader.db"
    assert config.environment == "dev"


def test_dry_run_false_string(monkeypatch):
    monkeypatch.setenv("DRY_RUN", "0")
    assert load_config(str(CONFIG_PATH)).execution.dry_run is False


def test_variable_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("COPYTRADER_TEST_URL", "https://venue.test")
    path = tmp_path / "config.yaml"
    path.write_text("venue:\n  base_url: ${COPYTRADER_TEST_URL}\n")

    assert Config.from_yaml(path).venue.base_url == "https://venue.test"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config.from_yaml(tmp_path / "nope.yaml")


@pytest.mark.parametrize(
    "field,value",
    [("max_retries", 0), ("min_api_interval_ms", -1), ("margin_buffer", "0.9"), ("dry_run_success_rate", 1.5)],
)
def test_out_of_range_execution_values_rejected(field, value):
    with pytest.raises(ValidationError):
        ExecutionConfig(**{field: value})


def test_negative_precision_override_rejected():
    with pytest.raises(ValidationError):
        SizingConfig(quantity_precision_overrides={"SOL_USDT": -1})


class TestDotenv:
    def test_prod_reads_nothing(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("COPYTRADER_DOTENV_PROBE=1\n")
        monkeypatch.delenv("COPYTRADER_DOTENV_PROBE", raising=False)

        assert load_dotenv_files(repo_root=tmp_path) == []

    def test_dev_reads_env_then_local(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "dev")
        monkeypatch.delenv("COPYTRADER_DOTENV_PROBE", raising=False)
        (tmp_path / ".env").write_text("COPYTRADER_DOTENV_PROBE=base\n")
        (tmp_path / ".env.local").write_text("COPYTRADER_DOTENV_PROBE=local\n")

        loaded = load_dotenv_files(repo_root=tmp_path)

        assert [p.name for p in loaded] == [".env", ".env.local"]
        assert os.environ["COPYTRADER_DOTENV_PROBE"] == "local"
        monkeypatch.delenv("COPYTRADER_DOTENV_PROBE")
