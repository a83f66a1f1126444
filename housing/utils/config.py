"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_optional_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    sqlite_busy_timeout_seconds: float

    redis_url: Optional[str]
    cache_key_prefix: str
    settings_cache_ttl_seconds: int
    statistics_cache_ttl_seconds: int

    age_gap_default_years: int
    age_gap_min_years: int
    age_gap_max_years: int

    search_default_limit: int
    search_max_limit: int

    reconciler_interval_seconds: float
    reconciler_auto_resolve_types: tuple[str, ...]
    reconciler_autostart: bool
    reconciler_retroactive_age_gap: bool
    reconciler_report_history: int

    seed_default_rooms: bool
    seed_demo_registrants: bool
    synthetic_random_seed: int
    synthetic_registrant_count: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; call ``cache_clear`` to re-read env."""
    return Settings(
        app_name=_env_str("APP_NAME", "Housing Allocation Service"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "housing.db"))
        ),
        sqlite_busy_timeout_seconds=_env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 10.0),
        redis_url=_env_optional_str("REDIS_URL"),
        cache_key_prefix=_env_str("CACHE_KEY_PREFIX", "housing:"),
        settings_cache_ttl_seconds=_env_int("SETTINGS_CACHE_TTL_SECONDS", 300),
        statistics_cache_ttl_seconds=_env_int("STATISTICS_CACHE_TTL_SECONDS", 15),
        age_gap_default_years=_env_int("AGE_GAP_DEFAULT_YEARS", 3),
        age_gap_min_years=_env_int("AGE_GAP_MIN_YEARS", 1),
        age_gap_max_years=_env_int("AGE_GAP_MAX_YEARS", 20),
        search_default_limit=_env_int("SEARCH_DEFAULT_LIMIT", 50),
        search_max_limit=_env_int("SEARCH_MAX_LIMIT", 200),
        reconciler_interval_seconds=_env_float("RECONCILER_INTERVAL_SECONDS", 1800.0),
        reconciler_auto_resolve_types=_env_csv(
            "RECONCILER_AUTO_RESOLVE_TYPES",
            ("orphaned-reference",),
        ),
        reconciler_autostart=_env_bool("RECONCILER_AUTOSTART", False),
        reconciler_retroactive_age_gap=_env_bool("RECONCILER_RETROACTIVE_AGE_GAP", False),
        reconciler_report_history=_env_int("RECONCILER_REPORT_HISTORY", 20),
        seed_default_rooms=_env_bool("SEED_DEFAULT_ROOMS", True),
        seed_demo_registrants=_env_bool("SEED_DEMO_REGISTRANTS", False),
        synthetic_random_seed=_env_int("SYNTHETIC_RANDOM_SEED", 42),
        synthetic_registrant_count=_env_int("SYNTHETIC_REGISTRANT_COUNT", 40),
    )
