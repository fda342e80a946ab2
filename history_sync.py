"""
Consumes Gmail push notifications and applies history deltas to the mails table.

Per mailbox the consumer moves Idle -> Fetching -> Applying -> Idle, with Error
reachable from Fetching and Applying. The cursor is advanced only after the whole
batch has been applied, so an interrupted batch is refetched and reapplied; mail
upserts are keyed by Gmail message id, which makes the replay harmless.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests
from google.auth.exceptions import TransportError

from credential_store import CredentialStore, ProviderFactory, connect_provider
from gmail_watch import parse_gmail_push_data
from mailbox_locks import MailboxLocks, normalize_mailbox
from supabase_state import BaseStateStore, utc_now
from sync_errors import (
    ConcurrentUpdateError,
    CredentialMissingError,
    CursorExpiredError,
    FetchFailedError,
    MailSyncError,
    ProviderError,
)
from watch_manager import WatchManager, WatchRegistration

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    ERROR = "error"


@dataclass
class SyncResult:
    email: str
    status: str
    applied: int = 0
    history_id: Optional[int] = None
    error_kind: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "status": self.status,
            "applied": self.applied,
            "historyId": str(self.history_id) if self.history_id is not None else None,
            "error_kind": self.error_kind,
            "detail": self.detail,
        }


@dataclass
class ResyncOutcome:
    email: str
    imported: int
    registration: WatchRegistration


class MailboxResync:
    """
    Full resynchronisation for a mailbox whose cursor can no longer be trusted:
    bulk-import recent messages, then re-register the watch with a fresh cursor.
    """

    def __init__(
        self,
        *,
        state_store: BaseStateStore,
        credential_store: CredentialStore,
        provider_factory: ProviderFactory,
        watch_manager: WatchManager,
        max_messages: int = 500,
    ) -> None:
        self.state_store = state_store
        self.credential_store = credential_store
        self.provider_factory = provider_factory
        self.watch_manager = watch_manager
        self.max_messages = max_messages

    def resync(self, mailbox_email: str) -> ResyncOutcome:
        mailbox_email = normalize_mailbox(mailbox_email)
        with self.watch_manager.locks.hold(mailbox_email):
            try:
                provider = connect_provider(self.credential_store, self.provider_factory, mailbox_email)
                records = provider.list_messages(mailbox_email, max_messages=self.max_messages)
            except (ProviderError, TransportError, requests.RequestException) as exc:
                raise FetchFailedError(mailbox_email, str(exc)) from exc
            imported = self.state_store.bulk_import(mailbox_email, records)
            logger.info("Bulk-imported %d message(s) for %s", imported, mailbox_email)
            registration = self.watch_manager.register_watch(mailbox_email, reset_cursor=True)
            return ResyncOutcome(email=mailbox_email, imported=imported, registration=registration)

    __call__ = resync


@dataclass
class _Slot:
    running: bool = False
    pending: bool = False
    pending_hint: Optional[int] = None


class HistorySyncConsumer:
    def __init__(
        self,
        *,
        state_store: BaseStateStore,
        credential_store: CredentialStore,
        provider_factory: ProviderFactory,
        locks: Optional[MailboxLocks] = None,
        resync: Optional[Callable[[str], ResyncOutcome]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.credential_store = credential_store
        self.provider_factory = provider_factory
        self.locks = locks or MailboxLocks()
        self.resync = resync
        self.clock = clock
        self.states: Dict[str, SyncState] = {}
        self._slots: Dict[str, _Slot] = {}
        self._slots_lock = threading.Lock()

    def state_of(self, mailbox_email: str) -> SyncState:
        return self.states.get(normalize_mailbox(mailbox_email), SyncState.IDLE)

    def _set_state(self, mailbox_email: str, state: SyncState) -> None:
        self.states[normalize_mailbox(mailbox_email)] = state

    def handle_pubsub_envelope(self, envelope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        notification = parse_gmail_push_data(envelope.get("message", {}))
        if not notification:
            return None
        email_address = notification["emailAddress"]
        hint = notification.get("historyId")
        results = self.notify(email_address, cursor_hint=int(hint) if hint else None)
        return {
            "emailAddress": email_address,
            "historyId": str(hint) if hint else None,
            "results": [result.to_dict() for result in results],
        }

    def notify(self, mailbox_email: str, *, cursor_hint: Optional[int] = None) -> List[SyncResult]:
        """
        Run sync cycles for the mailbox until no notification is left pending.

        A notification that arrives while a cycle is running only marks the slot as
        pending and returns an empty list; the running caller then performs exactly
        one more cycle for all notifications that arrived in the meantime. That
        follow-up cycle still runs when the current one raises; the first error is
        re-raised once the slot is drained.
        """
        mailbox_email = normalize_mailbox(mailbox_email)
        with self._slots_lock:
            slot = self._slots.setdefault(mailbox_email, _Slot())
            if slot.running:
                slot.pending = True
                if cursor_hint is not None:
                    slot.pending_hint = max(slot.pending_hint or 0, cursor_hint)
                logger.debug("Sync for %s already running; queued one more cycle", mailbox_email)
                return []
            slot.running = True

        results: List[SyncResult] = []
        first_error: Optional[Exception] = None
        hint = cursor_hint
        try:
            while True:
                try:
                    results.append(self.sync_once(mailbox_email, cursor_hint=hint))
                except Exception as exc:
                    self._set_state(mailbox_email, SyncState.ERROR)
                    logger.exception("Sync cycle for %s failed", mailbox_email)
                    if first_error is None:
                        first_error = exc
                with self._slots_lock:
                    if not slot.pending:
                        slot.running = False
                        break
                    slot.pending = False
                    hint = slot.pending_hint
                    slot.pending_hint = None
        except BaseException:
            with self._slots_lock:
                slot.running = False
                slot.pending = False
                slot.pending_hint = None
            raise
        if first_error is not None:
            raise first_error
        return results

    def sync_once(self, mailbox_email: str, *, cursor_hint: Optional[int] = None) -> SyncResult:
        with self.locks.hold(mailbox_email):
            subscription = self.state_store.get_subscription(mailbox_email)
            if subscription is None:
                logger.warning("Ignoring push for %s: no subscription on file", mailbox_email)
                return SyncResult(email=mailbox_email, status="skipped", detail="No subscription on file.")
            if subscription.is_stale(self.clock()):
                self._set_state(mailbox_email, SyncState.ERROR)
                return self._escalate(mailbox_email, "SubscriptionStale", "Watch expired; cursor cannot be resumed.")
            if cursor_hint is not None and cursor_hint <= subscription.history_id:
                return SyncResult(email=mailbox_email, status="up_to_date", history_id=subscription.history_id)

            self._set_state(mailbox_email, SyncState.FETCHING)
            try:
                provider = connect_provider(self.credential_store, self.provider_factory, mailbox_email)
                batch = provider.fetch_changes(mailbox_email, subscription.history_id)
            except CursorExpiredError as exc:
                self._set_state(mailbox_email, SyncState.ERROR)
                logger.warning("History cursor %s expired for %s", subscription.history_id, mailbox_email)
                return self._escalate(mailbox_email, exc.kind, exc.detail)
            except CredentialMissingError as exc:
                self._set_state(mailbox_email, SyncState.ERROR)
                logger.error("%s", exc)
                return SyncResult(email=mailbox_email, status="failed", error_kind=exc.kind, detail=exc.detail)
            except (ProviderError, TransportError, requests.RequestException) as exc:
                self._set_state(mailbox_email, SyncState.IDLE)
                error = FetchFailedError(mailbox_email, str(exc))
                logger.warning("%s", error)
                return SyncResult(
                    email=mailbox_email,
                    status="failed",
                    history_id=subscription.history_id,
                    error_kind=error.kind,
                    detail=error.detail,
                )

            self._set_state(mailbox_email, SyncState.APPLYING)
            try:
                applied = self.state_store.apply_changes(mailbox_email, batch.changes)
                new_history_id = max(subscription.history_id, batch.history_id or subscription.history_id)
                if new_history_id > subscription.history_id:
                    self.state_store.compare_and_set_subscription(
                        replace(subscription, history_id=new_history_id, updated_at=self.clock()),
                        expected_history_id=subscription.history_id,
                        expected_updated_at=subscription.updated_at,
                    )
            except ConcurrentUpdateError as exc:
                self._set_state(mailbox_email, SyncState.IDLE)
                logger.warning("Cursor for %s moved during sync; batch will be refetched: %s", mailbox_email, exc)
                return SyncResult(
                    email=mailbox_email,
                    status="conflict",
                    history_id=subscription.history_id,
                    detail=str(exc),
                )
            except requests.RequestException as exc:
                self._set_state(mailbox_email, SyncState.ERROR)
                logger.error("Applying history for %s failed: %s", mailbox_email, exc)
                return SyncResult(
                    email=mailbox_email,
                    status="failed",
                    history_id=subscription.history_id,
                    error_kind="ApplyFailed",
                    detail=str(exc),
                )

            self._set_state(mailbox_email, SyncState.IDLE)
            logger.info(
                "Applied %d change(s) for %s; historyId %s -> %s",
                applied,
                mailbox_email,
                subscription.history_id,
                new_history_id,
            )
            return SyncResult(email=mailbox_email, status="applied", applied=applied, history_id=new_history_id)

    def _escalate(self, mailbox_email: str, kind: str, detail: str) -> SyncResult:
        if self.resync is None:
            logger.error("Full resync required for %s (%s) but none is configured", mailbox_email, kind)
            return SyncResult(email=mailbox_email, status="failed", error_kind=kind, detail=detail)
        try:
            outcome = self.resync(mailbox_email)
        except (MailSyncError, requests.RequestException) as exc:
            logger.error("Full resync for %s failed: %s", mailbox_email, exc)
            return SyncResult(
                email=mailbox_email,
                status="failed",
                error_kind=kind,
                detail=f"{detail}; resync failed: {exc}",
            )
        self._set_state(mailbox_email, SyncState.IDLE)
        return SyncResult(
            email=mailbox_email,
            status="resynced",
            applied=outcome.imported,
            history_id=outcome.registration.history_id,
            error_kind=kind,
            detail=detail,
        )
