"""
Unit tests for config/sync_config.py
"""
from pathlib import Path

import pytest

from config.sync_config import (
    DEFAULT_COLUMNS,
    BoardSettings,
    _build_config_from_yaml,
    get_config,
    reload_config,
    set_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SUPABASE_URL", "SUPABASE_KEY", "SUPABASE_ANON_KEY", "BOARD_API_TOKEN", "BOARD_ID",
                 "SNAPSHOT_URL", "SNAPSHOT_EXPORT_PATH", "LISTING_CACHE_PATH", "SYNC_LOG_LEVEL",
                 "LISTING_SYNC_CONFIG"):
        monkeypatch.delenv(name, raising=False)
    yield
    set_config(None)


def test_packaged_yaml_loads():
    config = reload_config()

    assert config.local_cache.cache_key == "main_cache"
    assert config.shared_cache.table == "property_cache"
    assert config.board.page_size == 100
    assert config.board.max_consecutive_failures == 5
    assert [rule.name for rule in config.schedule] == ["shared_cache", "api"]
    assert config.get_rule("api").interval_minutes == 15
    assert not config.shared_cache.is_configured


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://env.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("BOARD_API_TOKEN", "token")
    monkeypatch.setenv("BOARD_ID", "42")
    monkeypatch.setenv("LISTING_CACHE_PATH", "/tmp/cache.json")

    config = _build_config_from_yaml({"shared_cache": {"url": "https://yaml.supabase.co"}})

    assert config.shared_cache.url == "https://env.supabase.co"
    assert config.shared_cache.key == "anon"
    assert config.shared_cache.is_configured
    assert config.board.board_id == "42"
    assert config.local_cache.path == Path("/tmp/cache.json")


def test_yaml_columns_extend_defaults():
    config = _build_config_from_yaml({"board": {"columns": {"ward": "ward_column"}}})

    assert config.board.columns["ward"] == "ward_column"
    assert config.board.columns["address"] == DEFAULT_COLUMNS["address"]


def test_missing_config_file_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("LISTING_SYNC_CONFIG", str(tmp_path / "absent.yaml"))

    config = get_config(reload=True)

    assert config.board.api_url == "https://api.monday.com/v2"
    assert config.filter_debounce_seconds == 0.3


def test_unknown_rule_raises():
    with pytest.raises(ValueError):
        reload_config().get_rule("nightly")


def test_board_settings_validation():
    with pytest.raises(AssertionError):
        BoardSettings(page_size=0)
