from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional


LOG_ENV_VAR = "MAIL_SYNC_ACTIVE_LOG"
LOG_DIR_ENV_VAR = "MAIL_SYNC_LOG_DIR"
LOG_LEVEL_ENV_VAR = "MAIL_SYNC_LOG_LEVEL"

# Chatty third-party loggers kept at WARNING unless we run at DEBUG.
NOISY_LOGGERS = (
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "urllib3.connectionpool",
)


def _running_in_cloud() -> bool:
    cloud_markers = (
        "K_SERVICE",
        "CLOUD_RUN_SERVICE",
        "CLOUD_RUN_JOB",
        "GAE_SERVICE",
    )
    return any(os.getenv(marker) for marker in cloud_markers)


def _resolve_level(name: Optional[str]) -> int:
    level = getattr(logging, (name or "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: Optional[str] = None) -> Optional[Path]:
    """
    Ensure logging is configured for the current process.

    ``level`` overrides MAIL_SYNC_LOG_LEVEL. Locally every record also goes to a
    timestamped file under MAIL_SYNC_LOG_DIR; on Cloud Run only stderr is used and
    the timestamp is left to Cloud Logging.

    Returns the active log file path when running locally, otherwise None.
    """
    if getattr(configure_logging, "_configured", False):
        return getattr(configure_logging, "_log_path", None)

    log_path: Optional[Path] = None
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_format = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

    if _running_in_cloud():
        log_format = "%(levelname)s [%(name)s] %(message)s"
    else:
        log_dir = Path(os.getenv(LOG_DIR_ENV_VAR, "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = log_dir / f"mail_sync_{timestamp}.log"
        handlers.append(logging.FileHandler(log_path, mode="w", encoding="utf-8"))

    log_level = _resolve_level(level or os.getenv(LOG_LEVEL_ENV_VAR))
    logging.basicConfig(level=log_level, format=log_format, handlers=handlers, force=True)
    if log_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    if log_path:
        os.environ[LOG_ENV_VAR] = str(log_path)

    configure_logging._configured = True  # type: ignore[attr-defined]
    configure_logging._log_path = log_path  # type: ignore[attr-defined]
    return log_path
