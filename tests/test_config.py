"""Tests for daybook.config."""

from datetime import timezone
from zoneinfo import ZoneInfo

import pytest
import yaml
from pydantic import ValidationError

from daybook.config import Config, TimelineConfig, load_config, save_config
from daybook.storage.gateway import DateAnchor

ENV_KEYS = (
    "DAYBOOK_OWNER_ID", "DAYBOOK_TIMEZONE", "DAYBOOK_DAYS_BACK", "DAYBOOK_DAYS_FORWARD",
    "DAYBOOK_POLL_INTERVAL", "DAYBOOK_STALL_TIMEOUT", "DAYBOOK_API_URL",
    "DAYBOOK_API_KEY", "DAYBOOK_DATA_DIR", "DAYBOOK_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "missing.yaml")

    assert config.owner_id == "local"
    assert config.timeline.days_back == 30
    assert config.timeline.days_forward == 7
    assert config.watcher.poll_interval_seconds == 2.0
    assert config.watcher.catch_up_delays == [0.5, 1.5, 3.0]
    assert config.watcher.stall_timeout_seconds == 0.0
    assert config.related.limit == 5
    assert config.enrichment.api_url is None


def test_yaml_values_override_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "account": {"owner_id": "alex"},
        "timeline": {"days_back": 3, "timezone": "Europe/Lisbon", "task_anchor": "due"},
        "storage": {"data_dir": str(tmp_path / "data")},
    }))

    config = load_config(path)

    assert config.owner_id == "alex"
    assert config.timeline.days_back == 3
    assert config.timeline.days_forward == 7
    assert config.timeline.task_anchor == DateAnchor.DUE
    assert config.timeline.tz == ZoneInfo("Europe/Lisbon")
    assert config.db_path == tmp_path / "data" / "daybook.db"


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"timeline": {"days_back": 3}}))
    monkeypatch.setenv("DAYBOOK_DAYS_BACK", "10")
    monkeypatch.setenv("DAYBOOK_OWNER_ID", "from-env")

    config = load_config(path)

    assert config.timeline.days_back == 10
    assert config.owner_id == "from-env"


def test_empty_yaml_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert load_config(path) == Config()


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        TimelineConfig(timezone="Mars/Olympus_Mons")


def test_negative_window_rejected():
    with pytest.raises(ValidationError):
        TimelineConfig(days_back=-1)


def test_system_timezone_fallback():
    assert TimelineConfig().tz is not None
    assert TimelineConfig(timezone="UTC").tz.utcoffset(None) == timezone.utc.utcoffset(None)


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    config = Config()
    config.timeline.days_forward = 14

    save_config(config, path)

    assert load_config(path).timeline.days_forward == 14
