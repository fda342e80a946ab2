from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

try:
    import config  # type: ignore
except ImportError:  # pragma: no cover - optional configuration module
    config = None  # type: ignore


# Labels whose changes trigger a push notification.
WATCH_LABEL_IDS: Tuple[str, ...] = ("INBOX", "UNREAD", "STARRED")
WATCH_LABEL_FILTER_ACTION = "include"


def _config_value(attr: str, env_name: str, default=None):
    if config and hasattr(config, attr):
        value = getattr(config, attr)
        if value not in (None, "", []):
            return value
    env_value = os.getenv(env_name)
    if env_value not in (None, ""):
        return env_value
    return default


def _true(value: Optional[str]) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class SyncSettings:
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    topic_name: Optional[str] = None
    service_account_file: Optional[str] = None
    delegated_user: Optional[str] = None
    provider_timeout: float = 30.0
    store_timeout: float = 30.0
    renewal_window: timedelta = timedelta(hours=24)
    renewal_interval: timedelta = timedelta(hours=1)
    renewal_max_workers: int = 4
    degraded_threshold: int = 3
    resync_max_messages: int = 500
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        telegram_token = _config_value("TELEGRAM_BOT_TOKEN", "TELEGRAM_BOT_TOKEN")
        telegram_chat_id = _config_value("TELEGRAM_CHAT_ID", "TELEGRAM_CHAT_ID")
        # Global kill-switch for Telegram (useful to stop message floods quickly)
        if _true(os.getenv("DISABLE_TELEGRAM", "")):
            telegram_token = None
            telegram_chat_id = None
        return cls(
            supabase_url=_config_value("SUPABASE_URL", "SUPABASE_URL"),
            supabase_service_role_key=_config_value("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_ROLE_KEY"),
            topic_name=_config_value("GMAIL_TOPIC_NAME", "GMAIL_TOPIC_NAME"),
            service_account_file=_config_value("GMAIL_SERVICE_ACCOUNT_FILE", "GMAIL_SERVICE_ACCOUNT_FILE"),
            delegated_user=_config_value("GMAIL_DELEGATED_USER", "GMAIL_DELEGATED_USER"),
            provider_timeout=float(_config_value("GMAIL_PROVIDER_TIMEOUT", "GMAIL_PROVIDER_TIMEOUT", 30)),
            store_timeout=float(_config_value("SUPABASE_TIMEOUT", "SUPABASE_TIMEOUT", 30)),
            renewal_window=timedelta(hours=float(_config_value("RENEWAL_WINDOW_HOURS", "RENEWAL_WINDOW_HOURS", 24))),
            renewal_interval=timedelta(
                seconds=float(_config_value("RENEWAL_INTERVAL_SECONDS", "RENEWAL_INTERVAL_SECONDS", 3600))
            ),
            renewal_max_workers=int(_config_value("RENEWAL_MAX_WORKERS", "RENEWAL_MAX_WORKERS", 4)),
            degraded_threshold=int(_config_value("SYNC_DEGRADED_THRESHOLD", "SYNC_DEGRADED_THRESHOLD", 3)),
            resync_max_messages=int(_config_value("RESYNC_MAX_MESSAGES", "RESYNC_MAX_MESSAGES", 500)),
            telegram_token=telegram_token,
            telegram_chat_id=telegram_chat_id,
        )
