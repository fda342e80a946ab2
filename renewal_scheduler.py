from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from supabase_state import BaseStateStore, Subscription, utc_now
from sync_errors import CredentialMissingError, MailSyncError
from watch_manager import WatchManager

logger = logging.getLogger(__name__)

Notifier = Callable[[str], Any]


@dataclass
class RenewalResult:
    email: str
    ok: bool
    history_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    sync_degraded: bool = False
    skipped: bool = False

    @property
    def status(self) -> str:
        if self.ok:
            return "renewed"
        return "awaiting_reauthorization" if self.skipped else "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "status": self.status,
            "historyId": str(self.history_id) if self.history_id is not None else None,
            "expiration": self.expires_at.isoformat() if self.expires_at else None,
            "error_kind": self.error_kind,
            "detail": self.detail,
            "sync_degraded": self.sync_degraded,
        }


class RenewalScheduler:
    """
    Periodically renews every watch that expires within ``renewal_window``.

    A failure for one mailbox never stops the others; it is counted on the
    subscription row and retried on the next tick. Once a mailbox reaches
    ``degraded_threshold`` consecutive failures (or has lapsed after a failure)
    it is reported as sync degraded and the operator is notified once.
    """

    def __init__(
        self,
        *,
        watch_manager: WatchManager,
        state_store: BaseStateStore,
        renewal_window: timedelta = timedelta(hours=24),
        interval: timedelta = timedelta(hours=1),
        max_workers: int = 4,
        degraded_threshold: int = 3,
        resync: Optional[Callable[[str], Any]] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.watch_manager = watch_manager
        self.state_store = state_store
        self.renewal_window = renewal_window
        self.interval = interval
        self.max_workers = max(1, max_workers)
        self.degraded_threshold = degraded_threshold
        self.resync = resync
        self.notifier = notifier
        self.clock = clock

    def due_subscriptions(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or self.clock()
        return self.state_store.list_subscriptions(expiring_before=now + self.renewal_window)

    def run_pass(self) -> List[RenewalResult]:
        now = self.clock()
        due = self.due_subscriptions(now)
        if not due:
            logger.info("Renewal pass: no watches expire within %s", self.renewal_window)
            return []
        logger.info("Renewal pass: %d watch(es) due", len(due))
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(due))) as pool:
            results = list(pool.map(lambda sub: self._renew(sub, now), due))
        failed = sum(1 for result in results if not result.ok)
        if failed:
            logger.warning("Renewal pass finished with %d failure(s) out of %d", failed, len(results))
        return results

    def _renew(self, subscription: Subscription, now: datetime) -> RenewalResult:
        email = subscription.email
        if subscription.needs_reauthorization:
            # Parked until a new token is stored and the watch is registered again.
            logger.info("Skipping %s: waiting for Gmail re-authorisation", email)
            return RenewalResult(
                email=email,
                ok=False,
                error_kind=CredentialMissingError.kind,
                detail=subscription.last_error,
                sync_degraded=True,
                skipped=True,
            )
        try:
            if subscription.is_stale(now):
                logger.warning("Watch for %s lapsed at %s; re-registering from scratch", email, subscription.expires_at)
                if self.resync is not None:
                    registration = self.resync(email).registration
                else:
                    registration = self.watch_manager.register_watch(email, reset_cursor=True)
            else:
                registration = self.watch_manager.register_watch(email)
        except CredentialMissingError as exc:
            return self._record_failure(
                subscription, now, exc.kind, exc.detail, min_failures=self.degraded_threshold
            )
        except (MailSyncError, requests.RequestException) as exc:
            kind = getattr(exc, "kind", type(exc).__name__)
            detail = getattr(exc, "detail", None) or str(exc)
            return self._record_failure(subscription, now, kind, detail)
        except Exception as exc:  # noqa: BLE001 - isolate per-mailbox failures
            logger.exception("Unexpected error renewing watch for %s", email)
            return self._record_failure(subscription, now, type(exc).__name__, str(exc))
        return RenewalResult(
            email=email,
            ok=True,
            history_id=registration.history_id,
            expires_at=registration.expires_at,
        )

    def _record_failure(
        self,
        subscription: Subscription,
        now: datetime,
        kind: str,
        detail: str,
        *,
        min_failures: int = 0,
    ) -> RenewalResult:
        email = subscription.email
        logger.warning("Renewal failed for %s (%s): %s", email, kind, detail)
        was_degraded = subscription.is_degraded(self.degraded_threshold, now)
        try:
            updated = self.state_store.record_renewal_failure(email, f"{kind}: {detail}", min_failures=min_failures)
        except requests.RequestException as exc:
            logger.error("Could not record renewal failure for %s: %s", email, exc)
            updated = None
        degraded = bool(updated and updated.is_degraded(self.degraded_threshold, now))
        if degraded and not was_degraded:
            self._notify_degraded(updated)
        return RenewalResult(email=email, ok=False, error_kind=kind, detail=detail, sync_degraded=degraded)

    def _notify_degraded(self, subscription: Subscription) -> None:
        logger.error(
            "Mailbox %s is sync degraded after %d failed renewal(s)",
            subscription.email,
            subscription.renewal_failures,
        )
        if self.notifier is None:
            return
        message = (
            f"Gmail sync degraded for {subscription.email}: watch renewal failed "
            f"{subscription.renewal_failures} time(s); expires {subscription.expires_at.isoformat()}.\n"
            f"Last error: {subscription.last_error}"
        )
        try:
            self.notifier(message)
        except Exception as exc:  # noqa: BLE001 - alerting must not break the pass
            logger.warning("Could not send degraded alert for %s: %s", subscription.email, exc)

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Renewal scheduler started (interval %s, window %s)", self.interval, self.renewal_window)
        while not stop_event.is_set():
            try:
                self.run_pass()
            except requests.RequestException as exc:
                # Listing subscriptions failed; the next tick retries.
                logger.error("Renewal pass aborted: %s", exc)
            stop_event.wait(self.interval.total_seconds())
        logger.info("Renewal scheduler stopped")
