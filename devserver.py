from __future__ import annotations

import os
import threading

import uvicorn

from logging_utils import configure_logging


def _env_flag(name: str, default: str = "1") -> bool:
    value = os.getenv(name, default)
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _start_renewal_loop() -> threading.Event:
    """Run the renewal scheduler next to the dev server, as Cloud Scheduler would in production."""
    from app import build_services
    from sync_config import SyncSettings

    stop_event = threading.Event()
    scheduler = build_services(SyncSettings.from_env()).scheduler
    if scheduler is None:
        print("GMAIL_TOPIC_NAME is not set; renewal loop not started")
        return stop_event
    threading.Thread(target=scheduler.run_forever, args=(stop_event,), name="renewal", daemon=True).start()
    return stop_event


def main() -> int:
    log_path = configure_logging()
    if log_path:
        print(f"Logging to {log_path}")

    host = os.getenv("MAIL_SYNC_DEV_HOST", "localhost")
    port = int(os.getenv("MAIL_SYNC_DEV_PORT", "8000"))
    reload = _env_flag("MAIL_SYNC_DEV_RELOAD", "1")
    log_level = os.getenv("MAIL_SYNC_DEV_LOG_LEVEL", "info")

    stop_event = _start_renewal_loop() if _env_flag("MAIL_SYNC_DEV_RENEW", "0") else None
    try:
        uvicorn.run(
            "app:app",
            host=host,
            port=port,
            reload=reload,
            log_level=log_level,
        )
    finally:
        if stop_event is not None:
            stop_event.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
