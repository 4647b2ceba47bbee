"""Configuration module for loading environment variables."""

import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def get_env_var(
    name: str, default: str | None = None, required: bool = True
) -> str | None:
    """Get environment variable with optional default value."""
    value = os.getenv(name, default)
    if required and value is None:
        logger.warning("Missing environment variable: %s", name)
    return value


def get_env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def require_env_value(name: str, value: str | None) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"Missing required environment variable: {name}")
    return value


# Brawl Stars API configuration (fallbacks; the settings table wins)
BRAWL_API_KEY: str | None = get_env_var("BRAWL_API_KEY", required=False)
CLUB_TAG: str | None = get_env_var("CLUB_TAG", required=False)

# Upstream endpoints
BRAWL_API_BASE_URL: str = os.getenv(
    "BRAWL_API_BASE_URL", "https://bsproxy.royaleapi.dev/v1"
)
RANKED_API_BASE_URL: str = os.getenv("RANKED_API_BASE_URL", "https://api.rnt.dev")

# HTTP timeouts (seconds)
API_TIMEOUT_SECONDS: float = get_env_float("API_TIMEOUT_SECONDS", 20.0)
RANKED_API_TIMEOUT_SECONDS: float = get_env_float("RANKED_API_TIMEOUT_SECONDS", 5.0)
WEBHOOK_TIMEOUT_SECONDS: float = get_env_float("WEBHOOK_TIMEOUT_SECONDS", 10.0)

# PostgreSQL configuration
DATABASE_URL: str | None = get_env_var("DATABASE_URL", required=False)

# Background task configuration
SYNC_INTERVAL_SECONDS: int = get_env_int("SYNC_INTERVAL_SECONDS", 3600)

# Upstream throttling: members fetched concurrently per batch
MEMBER_BATCH_SIZE: int = get_env_int("MEMBER_BATCH_SIZE", 3)
MEMBER_BATCH_DELAY_SECONDS: float = get_env_float("MEMBER_BATCH_DELAY_SECONDS", 0.5)

# Activity classification
INACTIVITY_THRESHOLD_HOURS: int = get_env_int("INACTIVITY_THRESHOLD_HOURS", 48)
ACTIVE_TROPHY_DELTA: int = get_env_int("ACTIVE_TROPHY_DELTA", 20)

# Retention windows (days)
ACTIVITY_RETENTION_DAYS: int = get_env_int("ACTIVITY_RETENTION_DAYS", 30)
BATTLE_RETENTION_DAYS: int = get_env_int("BATTLE_RETENTION_DAYS", 30)
SNAPSHOT_RETENTION_DAYS: int = get_env_int("SNAPSHOT_RETENTION_DAYS", 30)
NOTIFICATION_RETENTION_DAYS: int = get_env_int("NOTIFICATION_RETENTION_DAYS", 30)

# Notifications
NOTIFICATIONS_ENABLED: bool = get_env_bool("NOTIFICATIONS_ENABLED", True)
DISCORD_WEBHOOK_URL: str | None = get_env_var("DISCORD_WEBHOOK_URL", required=False)
NOTIFICATION_DEDUP_MINUTES: int = get_env_int("NOTIFICATION_DEDUP_MINUTES", 10)
INACTIVE_ALERT_COOLDOWN_HOURS: int = get_env_int("INACTIVE_ALERT_COOLDOWN_HOURS", 24)
WEBHOOK_BATCH_SIZE: int = get_env_int("WEBHOOK_BATCH_SIZE", 10)
