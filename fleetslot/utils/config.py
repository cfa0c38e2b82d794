"""Runtime settings resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_tuple(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    database_path: Path
    database_busy_timeout_seconds: float
    default_total_slots: int
    max_total_slots: int
    cas_max_attempts: int
    cas_retry_backoff_seconds: float
    selection_priority_order: tuple[str, ...]
    payment_timeout_hours: int
    reclamation_interval_minutes: int
    reclamation_enabled: bool
    seed_demo_materials: bool
    demo_materials: tuple[tuple[str, str, str, str], ...]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests override with dataclasses.replace."""
    return Settings(
        app_name=_env_str("APP_NAME", "FleetSlot Allocation Engine"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "fleetslot.db"))
        ),
        database_busy_timeout_seconds=_env_float("DATABASE_BUSY_TIMEOUT_SECONDS", 5.0),
        default_total_slots=_env_int("DEFAULT_TOTAL_SLOTS", 5),
        max_total_slots=_env_int("MAX_TOTAL_SLOTS", 10),
        cas_max_attempts=_env_int("CAS_MAX_ATTEMPTS", 5),
        cas_retry_backoff_seconds=_env_float("CAS_RETRY_BACKOFF_SECONDS", 0.01),
        selection_priority_order=_env_tuple(
            "SELECTION_PRIORITY_ORDER",
            (
                "DGL-HEADDRESS-CAR-002",
                "DGL-HEADDRESS-CAR-003",
                "DGL-HEADDRESS-CAR-001",
            ),
        ),
        payment_timeout_hours=_env_int("PAYMENT_TIMEOUT_HOURS", 24),
        reclamation_interval_minutes=_env_int("RECLAMATION_INTERVAL_MINUTES", 60),
        reclamation_enabled=_env_bool("RECLAMATION_ENABLED", True),
        seed_demo_materials=_env_bool("SEED_DEMO_MATERIALS", True),
        demo_materials=(
            ("DGL-HEADDRESS-CAR-001", "HEADDRESS", "CAR", "DIGITAL"),
            ("DGL-HEADDRESS-CAR-002", "HEADDRESS", "CAR", "DIGITAL"),
            ("DGL-HEADDRESS-CAR-003", "HEADDRESS", "CAR", "DIGITAL"),
            ("DGL-LCD-MOTOR-001", "LCD", "MOTORCYCLE", "DIGITAL"),
            ("NDGL-POSTER-BUS-001", "POSTER", "BUS", "NON_DIGITAL"),
        ),
    )
