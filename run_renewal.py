import argparse
import json
import signal
import threading
from datetime import timedelta

from app import build_services
from logging_utils import configure_logging
from sync_config import SyncSettings


def main() -> int:
    parser = argparse.ArgumentParser(description="Renew Gmail watches that are close to expiry.")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running and renew on every RENEWAL_INTERVAL_SECONDS tick instead of a single pass.",
    )
    parser.add_argument("--window-hours", type=float, help="Override the renewal window (default: 24h)")
    parser.add_argument("--log-level", help="Override MAIL_SYNC_LOG_LEVEL for this run")
    args = parser.parse_args()

    configure_logging(args.log_level)
    services = build_services(SyncSettings.from_env())
    scheduler = services.scheduler
    if scheduler is None:
        parser.error("GMAIL_TOPIC_NAME must be configured.")
    if args.window_hours is not None:
        scheduler.renewal_window = timedelta(hours=args.window_hours)

    if args.loop:
        stop_event = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
        signal.signal(signal.SIGINT, lambda *_: stop_event.set())
        scheduler.run_forever(stop_event)
        return 0

    results = scheduler.run_pass()
    print(json.dumps([result.to_dict() for result in results], indent=2, sort_keys=True))
    return 0 if all(result.ok for result in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
