from __future__ import annotations

import os
from dataclasses import dataclass


def _build_database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "store")
    password = os.environ.get("DB_PASSWORD", "store")
    host = os.environ.get("DB_HOST", "store-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "store_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _positive(name: str, default: str) -> float:
    value = float(os.environ.get(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///store.db"
    redis_url: str = "redis://localhost:6379"
    notifier_mode: str = "redis"
    payment_timeout_minutes: int = 15
    payment_timeout_minutes_client: int = 15
    expiry_buffer_seconds: float = 10.0
    sync_interval_seconds: float = 60.0
    sync_batch_limit: int = 50
    sync_min_age_seconds: float = 0.0
    sync_pace_seconds: float = 0.1
    scheduler_enabled: bool = True
    gateway_mode: str = "mock"
    gateway_url: str = "https://api.tokopay.id/v1"
    gateway_merchant_id: str = ""
    gateway_secret: str = ""
    gateway_timeout_seconds: float = 5.0
    mock_gateway_status: str = "pending"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_build_database_url(),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            notifier_mode=os.environ.get("NOTIFIER_MODE", "redis").lower(),
            payment_timeout_minutes=int(os.environ.get("PAYMENT_TIMEOUT_MINUTES", "15")),
            payment_timeout_minutes_client=int(
                os.environ.get("PAYMENT_TIMEOUT_MINUTES_CLIENT", "15")
            ),
            expiry_buffer_seconds=float(os.environ.get("PAYMENT_EXPIRY_BUFFER_SECONDS", "10")),
            sync_interval_seconds=_positive("SYNC_INTERVAL_SECONDS", "60"),
            sync_batch_limit=int(os.environ.get("SYNC_BATCH_LIMIT", "50")),
            sync_min_age_seconds=float(os.environ.get("SYNC_MIN_AGE_SECONDS", "0")),
            sync_pace_seconds=float(os.environ.get("SYNC_PACE_SECONDS", "0.1")),
            scheduler_enabled=_flag("SCHEDULER_ENABLED", "true"),
            gateway_mode=os.environ.get("GATEWAY_MODE", "mock").lower(),
            gateway_url=os.environ.get("GATEWAY_URL", "https://api.tokopay.id/v1"),
            gateway_merchant_id=os.environ.get("GATEWAY_MERCHANT_ID", ""),
            gateway_secret=os.environ.get("GATEWAY_SECRET", ""),
            gateway_timeout_seconds=float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "5")),
            mock_gateway_status=os.environ.get("MOCK_GATEWAY_STATUS", "pending"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def payment_timeout_seconds(self) -> float:
        return self.payment_timeout_minutes * 60.0
