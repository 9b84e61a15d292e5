"""Configuration: reads all settings from environment variables."""

import os

from app.env_utils import get_env


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str) -> list[str]:
    raw = os.getenv(name, "")
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


# Supabase
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY: str = get_env("SUPABASE_SERVICE_ROLE_KEY")
REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

# Caching
ANALYTICS_FRESHNESS_SECONDS: float = float(os.getenv("ANALYTICS_FRESHNESS_SECONDS", "900"))
LISTING_FRESHNESS_SECONDS: float = float(os.getenv("LISTING_FRESHNESS_SECONDS", "300"))
LISTING_EVICT_AFTER_SECONDS: float = float(os.getenv("LISTING_EVICT_AFTER_SECONDS", "1800"))
BACKGROUND_REFRESH_TIMEOUT_SECONDS: float = float(os.getenv("BACKGROUND_REFRESH_TIMEOUT_SECONDS", "8"))
SYNC_REFRESH_TIMEOUT_SECONDS: float = float(os.getenv("SYNC_REFRESH_TIMEOUT_SECONDS", "30"))
ANALYTICS_WARMUP_ON_STARTUP: bool = _env_bool("ANALYTICS_WARMUP_ON_STARTUP", True)

# Admin API
ADMIN_TOKEN: str = get_env("ADMIN_TOKEN")
CORS_ORIGINS: list[str] = _env_csv("CORS_ORIGINS")
MAX_PAGE_SIZE: int = int(os.getenv("MAX_PAGE_SIZE", "100"))
EXPORT_ROW_LIMIT: int = int(os.getenv("EXPORT_ROW_LIMIT", "10000"))
