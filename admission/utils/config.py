"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    admin_token: str | None
    sqlite_busy_timeout_seconds: float
    payment_deadline_days: int
    overdue_sweep_interval_seconds: int
    overdue_sweep_enabled: bool
    ledger_check_interval_seconds: float
    ledger_check_enabled: bool
    session_ttl_seconds: int
    max_sessions_per_admin: int
    occupancy_high_threshold: float
    occupancy_critical_threshold: float
    occupancy_full_threshold: float
    default_page_limit: int
    max_page_limit: int
    seed_sample_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests clear the cache to rebuild."""
    database_path = Path(
        os.getenv("DATABASE_PATH", str(PROJECT_ROOT / "data" / "admission.db"))
    )
    return Settings(
        app_name=os.getenv("APP_NAME", "Booking Admission Service"),
        app_version=os.getenv("APP_VERSION", "1.0.0"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_path=database_path,
        admin_token=os.getenv("ADMIN_TOKEN") or None,
        sqlite_busy_timeout_seconds=_env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 10.0),
        payment_deadline_days=_env_int("PAYMENT_DEADLINE_DAYS", 7),
        overdue_sweep_interval_seconds=_env_int("OVERDUE_SWEEP_INTERVAL_SECONDS", 300),
        overdue_sweep_enabled=_env_bool("OVERDUE_SWEEP_ENABLED", True),
        ledger_check_interval_seconds=_env_float("LEDGER_CHECK_INTERVAL_SECONDS", 3600.0),
        ledger_check_enabled=_env_bool("LEDGER_CHECK_ENABLED", True),
        session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 12 * 3600),
        max_sessions_per_admin=_env_int("MAX_SESSIONS_PER_ADMIN", 5),
        occupancy_high_threshold=_env_float("OCCUPANCY_HIGH_THRESHOLD", 60.0),
        occupancy_critical_threshold=_env_float("OCCUPANCY_CRITICAL_THRESHOLD", 80.0),
        occupancy_full_threshold=_env_float("OCCUPANCY_FULL_THRESHOLD", 100.0),
        default_page_limit=_env_int("DEFAULT_PAGE_LIMIT", 20),
        max_page_limit=_env_int("MAX_PAGE_LIMIT", 100),
        seed_sample_data=_env_bool("SEED_SAMPLE_DATA", True),
    )
