"""Configuration loading for the ratewatch engine."""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any

import yaml

from ratewatch.errors import ConfigError
from ratewatch.logging_config import get_logger

LOGGER = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yml")

DEFAULT_CONFIG: dict[str, Any] = {
    "portal": {
        "login_url": "https://accounts.webbeds.com/oauth2/authorize",
        "search_url": "https://www.dotwconnect.com/interface/en/accommodation",
        "authenticated_url_fragment": "dotwconnect.com/interface",
        "destination": "Makkah",
        "currency": "SAR",
        "date_format": "%d/%m/%Y",
    },
    "tracking": {
        "entities": [],
        "dates": [],
    },
    "schedule": {"minutes": 10},
    "storage": {"sqlite_path": "ratewatch.sqlite"},
    "sessions": {"directory": ".sessions", "lifetime_days": 15},
    "alerts": {"notify": True},
}


@dataclass(frozen=True)
class EntitySpec:
    """Hotel listed in configuration for seeding the tracked set."""

    name: str
    key: str
    group: str = "Makkah"


def _deep_merge(default: Any, override: Any) -> Any:
    if not isinstance(default, dict) or not isinstance(override, dict):
        return deepcopy(override)

    merged: dict[str, Any] = deepcopy(default)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load YAML configuration merged over the defaults, then env overrides."""

    path = path or DEFAULT_CONFIG_PATH
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    else:
        LOGGER.warning("Configuration file %s not found; using defaults", path)
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")

    merged = _deep_merge(DEFAULT_CONFIG, data) if data else deepcopy(DEFAULT_CONFIG)

    session_dir = os.getenv("RATEWATCH_SESSION_DIR")
    if session_dir:
        merged["sessions"]["directory"] = session_dir
    return merged


def database_target(config: dict[str, Any]) -> str:
    """Return ``DATABASE_URL`` when set, otherwise the configured SQLite path."""

    return os.getenv("DATABASE_URL") or str(
        (config.get("storage") or {}).get("sqlite_path") or "ratewatch.sqlite"
    )


def schedule_minutes(config: dict[str, Any]) -> int:
    raw = (config.get("schedule") or {}).get("minutes", 10)
    try:
        minutes = int(raw)
    except (TypeError, ValueError):
        minutes = 10
    return minutes if minutes > 0 else 10


def session_lifetime(config: dict[str, Any]) -> timedelta:
    raw = (config.get("sessions") or {}).get("lifetime_days", 15)
    try:
        days = int(raw)
    except (TypeError, ValueError):
        days = 15
    return timedelta(days=days if days > 0 else 15)


def resolve_entities(config: dict[str, Any]) -> list[EntitySpec]:
    entries = (config.get("tracking") or {}).get("entities") or []
    if not isinstance(entries, list):
        raise ConfigError("tracking.entities must be a list")

    specs: list[EntitySpec] = []
    seen: set[str] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid tracked entity entry: {entry!r}")
        name = str(entry.get("name", "")).strip()
        key = str(entry.get("key", "")).strip()
        if not name or not key:
            raise ConfigError(f"Tracked entity needs a name and key: {entry!r}")
        if key in seen:
            LOGGER.warning("Duplicate tracked entity key %s ignored", key)
            continue
        seen.add(key)
        group = str(entry.get("group") or "Makkah").strip()
        specs.append(EntitySpec(name=name, key=key, group=group))
    return specs


def _parse_day(value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid tracked date: {value!r}") from exc


def resolve_dates(config: dict[str, Any]) -> list[date]:
    """Return tracked stay dates from an explicit list or a ``{start, end}`` range."""

    raw = (config.get("tracking") or {}).get("dates") or []
    if isinstance(raw, dict):
        start = _parse_day(raw.get("start"))
        end = _parse_day(raw.get("end"))
        if end < start:
            raise ConfigError(f"tracking.dates range ends before it starts: {start} > {end}")
        return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]
    if not isinstance(raw, list):
        raise ConfigError("tracking.dates must be a list or a {start, end} mapping")
    return sorted({_parse_day(value) for value in raw})
