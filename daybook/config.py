"""
Layered configuration for daybook.
Priority: defaults → ~/.daybook/config.yaml → environment variables
"""
from __future__ import annotations

import os
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

from .storage.gateway import DateAnchor

CONFIG_DIR = Path.home() / ".daybook"
CONFIG_FILE = CONFIG_DIR / "config.yaml"


class AccountConfig(BaseModel):
    owner_id: str = "local"


class TimelineConfig(BaseModel):
    days_back: int = Field(default=30, ge=0)
    days_forward: int = Field(default=7, ge=0)
    timezone: Optional[str] = None   # None → system local timezone
    task_anchor: DateAnchor = DateAnchor.CREATED

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"unknown timezone: {value}") from exc
        return value or None

    @property
    def tz(self) -> tzinfo:
        if self.timezone:
            return ZoneInfo(self.timezone)
        return datetime.now().astimezone().tzinfo


class WatcherConfig(BaseModel):
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    catch_up_delays: list[float] = Field(default_factory=lambda: [0.5, 1.5, 3.0])
    stall_timeout_seconds: float = Field(default=0.0, ge=0)   # 0 disables


class RelatedConfig(BaseModel):
    limit: int = Field(default=5, gt=0)
    pool_size: int = Field(default=50, gt=0)


class EnrichmentConfig(BaseModel):
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0


class StorageConfig(BaseModel):
    data_dir: str = "~/.daybook/data"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_path / "daybook.db"


class DisplayConfig(BaseModel):
    log_level: str = "WARNING"
    undo_window_seconds: float = 5.0


class Config(BaseModel):
    account: AccountConfig = Field(default_factory=AccountConfig)
    timeline: TimelineConfig = Field(default_factory=TimelineConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    related: RelatedConfig = Field(default_factory=RelatedConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)

    # Convenience proxies
    @property
    def owner_id(self) -> str:
        return self.account.owner_id

    @property
    def db_path(self) -> Path:
        return self.storage.db_path


def load_config(path: Optional[Path] = None) -> Config:
    """Load config from file with safe defaults for any missing key."""
    path = path or CONFIG_FILE
    raw: dict = {}

    if path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f)
            if isinstance(loaded, dict):
                raw = loaded

    # Environment variable overrides (DAYBOOK_SECTION_KEY format)
    _apply_env_overrides(raw)

    return Config(**raw)


def save_config(config: Config, path: Optional[Path] = None) -> Path:
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(config.model_dump(mode="json"), f, sort_keys=False)
    return path


def _apply_env_overrides(raw: dict) -> None:
    mappings = {
        "DAYBOOK_OWNER_ID": ("account", "owner_id"),
        "DAYBOOK_TIMEZONE": ("timeline", "timezone"),
        "DAYBOOK_DAYS_BACK": ("timeline", "days_back"),
        "DAYBOOK_DAYS_FORWARD": ("timeline", "days_forward"),
        "DAYBOOK_POLL_INTERVAL": ("watcher", "poll_interval_seconds"),
        "DAYBOOK_STALL_TIMEOUT": ("watcher", "stall_timeout_seconds"),
        "DAYBOOK_API_URL": ("enrichment", "api_url"),
        "DAYBOOK_API_KEY": ("enrichment", "api_key"),
        "DAYBOOK_DATA_DIR": ("storage", "data_dir"),
        "DAYBOOK_LOG_LEVEL": ("display", "log_level"),
    }
    for env_key, (section, key) in mappings.items():
        val = os.getenv(env_key)
        if val:
            raw.setdefault(section, {})[key] = val
