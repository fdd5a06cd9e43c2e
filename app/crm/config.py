import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    transition_conflict_retries: int

    auto_transfer_enabled: bool
    auto_transfer_days_without_progress: str
    auto_transfer_target_sales_id: str


@dataclass(frozen=True)
class AutoTransferPolicy:
    """
    Customer auto-transfer rule: customers with no update for `days_without_progress`
    days are handed to `target_sales_id` by the external scheduler.
    """

    enabled: bool
    days_without_progress: int
    target_sales_id: int | None


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r}).") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///crm.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        transition_conflict_retries=_getenv_int("TRANSITION_CONFLICT_RETRIES", 1),
        auto_transfer_enabled=_getenv_bool("AUTO_TRANSFER_ENABLED"),
        auto_transfer_days_without_progress=_getenv("AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS", "30"),
        auto_transfer_target_sales_id=_getenv("AUTO_TRANSFER_TARGET_SALES_ID", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "TRANSITION_CONFLICT_RETRIES": max(0, s.transition_conflict_retries),
        "AUTO_TRANSFER_ENABLED": s.auto_transfer_enabled,
        "AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS": s.auto_transfer_days_without_progress,
        "AUTO_TRANSFER_TARGET_SALES_ID": s.auto_transfer_target_sales_id,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        "JSON_SORT_KEYS": False,
    }


def auto_transfer_policy_from_config(config: Mapping[str, Any]) -> AutoTransferPolicy:
    enabled = bool(config.get("AUTO_TRANSFER_ENABLED"))
    raw_days = str(config.get("AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS") or "").strip()
    raw_target = str(config.get("AUTO_TRANSFER_TARGET_SALES_ID") or "").strip()

    try:
        days = int(raw_days or "30")
    except ValueError:
        raise ValueError(f"AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS must be an integer (got {raw_days!r}).") from None
    if days < 1:
        raise ValueError("AUTO_TRANSFER_DAYS_WITHOUT_PROGRESS must be at least 1.")

    target: int | None = None
    if raw_target:
        try:
            target = int(raw_target)
        except ValueError:
            raise ValueError(f"AUTO_TRANSFER_TARGET_SALES_ID must be a user id (got {raw_target!r}).") from None
    if enabled and target is None:
        raise ValueError("AUTO_TRANSFER_TARGET_SALES_ID is required when AUTO_TRANSFER_ENABLED is set.")

    return AutoTransferPolicy(enabled=enabled, days_without_progress=days, target_sales_id=target)
