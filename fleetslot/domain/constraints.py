"""Domain-level validation rules for the allocation engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

from fleetslot.utils.config import Settings


@dataclass(frozen=True)
class EngineConfig:
    default_total_slots: int
    max_total_slots: int
    cas_max_attempts: int
    cas_retry_backoff_seconds: float
    payment_timeout_hours: int
    reclamation_interval_minutes: int


def engine_config_from_settings(settings: Settings) -> EngineConfig:
    return EngineConfig(
        default_total_slots=settings.default_total_slots,
        max_total_slots=settings.max_total_slots,
        cas_max_attempts=settings.cas_max_attempts,
        cas_retry_backoff_seconds=settings.cas_retry_backoff_seconds,
        payment_timeout_hours=settings.payment_timeout_hours,
        reclamation_interval_minutes=settings.reclamation_interval_minutes,
    )


def validate_engine_config(config: EngineConfig) -> None:
    if config.max_total_slots <= 0:
        raise ValueError("max_total_slots must be > 0")
    if not 1 <= config.default_total_slots <= config.max_total_slots:
        raise ValueError("default_total_slots must be between 1 and max_total_slots")
    if config.cas_max_attempts <= 0:
        raise ValueError("cas_max_attempts must be > 0")
    if config.cas_retry_backoff_seconds < 0.0:
        raise ValueError("cas_retry_backoff_seconds must be >= 0")
    if config.payment_timeout_hours <= 0:
        raise ValueError("payment_timeout_hours must be > 0")
    if config.reclamation_interval_minutes <= 0:
        raise ValueError("reclamation_interval_minutes must be > 0")


def validate_total_slots(total_slots: int, max_total_slots: int) -> None:
    if not 1 <= total_slots <= max_total_slots:
        raise ValueError(f"total_slots must be between 1 and {max_total_slots}")
