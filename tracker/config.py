from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from tracker.db import get_database_url

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "app-config.json"

ProviderType = Literal["relational", "embedded-file", "remote-table"]


class RelationalConfig(BaseModel):
    url: str | None = None
    echo: bool = False
    pool_size: int | None = None
    max_overflow: int | None = None
    pool_timeout: float | None = None
    pool_recycle: int | None = None
    seed_defaults: bool = True
    archive_on_init: bool = True
    serialize_writes: bool = False

    def database_url(self) -> str:
        return get_database_url(self.url)


class EmbeddedFileConfig(BaseModel):
    filename: str = str(Path("data") / "monkey-tracker.sqlite")


class RemoteTableConfig(BaseModel):
    api_token: str = ""
    doc_id: str = ""
    table_id: str = ""
    show_id_column: str = "Show ID"
    payload_column: str = "Payload"
    base_url: str = "https://coda.io/apis/v1"
    timeout: float = 30.0

    def missing_fields(self) -> list[str]:
        required = ("api_token", "doc_id", "table_id", "show_id_column", "payload_column")
        return [name for name in required if not getattr(self, name).strip()]


class AdminSeed(BaseModel):
    email: str = "admin@example.com"
    name: str = "Administrator"
    password: str = "change-me-now"


class StaffSeed(BaseModel):
    crew: list[str] = Field(default_factory=lambda: ["Alex", "Jordan", "Sam"])
    pilots: list[str] = Field(default_factory=lambda: ["Casey", "Morgan", "Riley"])
    monkey_leads: list[str] = Field(default_factory=lambda: ["Taylor"])


class TrackerConfig(BaseModel):
    provider: ProviderType = "relational"
    relational: RelationalConfig = Field(default_factory=RelationalConfig)
    embedded_file: EmbeddedFileConfig = Field(default_factory=EmbeddedFileConfig)
    remote_table: RemoteTableConfig = Field(default_factory=RemoteTableConfig)
    default_admin: AdminSeed = Field(default_factory=AdminSeed)
    default_staff: StaffSeed = Field(default_factory=StaffSeed)
    archive_sweep_interval_seconds: int = Field(default=3600, ge=0)
    log_level: str = "INFO"


def get_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.getenv("TRACKER_CONFIG", str(DEFAULT_CONFIG_PATH)))


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: TrackerConfig) -> TrackerConfig:
    updates: dict[str, Any] = {}
    provider = os.getenv("TRACKER_STORAGE_PROVIDER")
    if provider:
        updates["provider"] = provider
    if os.getenv("DATABASE_URL"):
        updates["relational"] = {"url": os.environ["DATABASE_URL"]}
    admin: dict[str, str] = {}
    if os.getenv("TRACKER_ADMIN_EMAIL"):
        admin["email"] = os.environ["TRACKER_ADMIN_EMAIL"]
    if os.getenv("TRACKER_ADMIN_PASSWORD"):
        admin["password"] = os.environ["TRACKER_ADMIN_PASSWORD"]
    if admin:
        updates["default_admin"] = admin
    if not updates:
        return config
    return TrackerConfig.model_validate(_merge(config.model_dump(), updates))


def ensure_config_file(path: Path) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(TrackerConfig().model_dump(), indent=2), encoding="utf-8")


def load_config(path: str | Path | None = None) -> TrackerConfig:
    config_path = get_config_path(path)
    ensure_config_file(config_path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
        config = TrackerConfig.model_validate(_merge(TrackerConfig().model_dump(), raw))
    except (OSError, ValueError, ValidationError):
        logger.exception("Failed to load config from %s, falling back to defaults", config_path)
        config = TrackerConfig()
    return apply_env_overrides(config)


def save_config(config: TrackerConfig | dict[str, Any], path: str | Path | None = None) -> TrackerConfig:
    config_path = get_config_path(path)
    ensure_config_file(config_path)
    overrides = config.model_dump() if isinstance(config, TrackerConfig) else config
    merged = TrackerConfig.model_validate(_merge(TrackerConfig().model_dump(), overrides))
    config_path.write_text(json.dumps(merged.model_dump(), indent=2), encoding="utf-8")
    return merged


def update_config(overrides: dict[str, Any], path: str | Path | None = None) -> TrackerConfig:
    """Merge ``overrides`` over the stored file, persist, and return the effective config."""
    config_path = get_config_path(path)
    ensure_config_file(config_path)
    try:
        stored = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.exception("Stored config at %s is unreadable, replacing it", config_path)
        stored = {}
    if not isinstance(stored, dict):
        stored = {}
    return apply_env_overrides(save_config(_merge(stored, overrides), config_path))


def public_config(config: TrackerConfig) -> dict[str, Any]:
    data = config.model_dump()
    data["remote_table"]["api_token"] = "********" if config.remote_table.api_token else ""
    data["default_admin"].pop("password", None)
    return data
