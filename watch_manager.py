from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

import requests
from google.auth.exceptions import TransportError

from credential_store import CredentialStore, ProviderFactory, connect_provider
from mailbox_locks import MailboxLocks, normalize_mailbox
from supabase_state import BaseStateStore, Subscription, utc_now
from sync_config import WATCH_LABEL_IDS
from sync_errors import (
    ConcurrentUpdateError,
    PersistenceVerificationFailedError,
    ProviderError,
    ProviderRegistrationFailedError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchRegistration:
    email: str
    history_id: int
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "historyId": str(self.history_id),
            "expiration": self.expires_at.isoformat(),
        }


class WatchManager:
    """
    Registers or renews the Gmail push subscription for one mailbox and records
    the resulting cursor and expiry.
    """

    def __init__(
        self,
        *,
        state_store: BaseStateStore,
        credential_store: CredentialStore,
        provider_factory: ProviderFactory,
        topic_name: str,
        label_ids: Sequence[str] = WATCH_LABEL_IDS,
        locks: Optional[MailboxLocks] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not topic_name:
            raise ValueError("GMAIL_TOPIC_NAME must be configured.")
        self.state_store = state_store
        self.credential_store = credential_store
        self.provider_factory = provider_factory
        self.topic_name = topic_name
        self.label_ids = tuple(label_ids)
        self.locks = locks or MailboxLocks()
        self.clock = clock

    def register_watch(self, mailbox_email: str, *, reset_cursor: bool = False) -> WatchRegistration:
        """
        Call the provider's watch API and upsert the subscription row, then read it
        back to confirm what was stored.

        The provider's fresh cursor is adopted for a new or stale subscription, or when
        ``reset_cursor`` is set after a full resync. A live renewal keeps the stored
        cursor so changes that have not been applied yet can still be fetched; the
        returned ``history_id`` is then the stored cursor, not the one Gmail reported.
        The address is lowercased before use.

        Raises CredentialMissingError, ProviderRegistrationFailedError or
        PersistenceVerificationFailedError.
        """
        mailbox_email = normalize_mailbox(mailbox_email)
        with self.locks.hold(mailbox_email):
            try:
                provider = connect_provider(self.credential_store, self.provider_factory, mailbox_email)
                response = provider.watch(mailbox_email, self.label_ids, self.topic_name)
            except (ProviderError, TransportError, requests.RequestException) as exc:
                # RequestException: the token backend is unreachable
                logger.warning("Gmail watch failed for %s: %s", mailbox_email, exc)
                raise ProviderRegistrationFailedError(mailbox_email, str(exc)) from exc

            try:
                existing = self.state_store.get_subscription(mailbox_email)
                desired = self._next_subscription(mailbox_email, existing, response, reset_cursor)
                if existing is None:
                    self.state_store.insert_subscription(desired)
                else:
                    self.state_store.compare_and_set_subscription(
                        desired,
                        expected_history_id=existing.history_id,
                        expected_updated_at=existing.updated_at,
                    )
                stored = self.state_store.get_subscription(mailbox_email)
            except ConcurrentUpdateError as exc:
                raise PersistenceVerificationFailedError(mailbox_email, str(exc)) from exc
            except requests.RequestException as exc:
                raise PersistenceVerificationFailedError(mailbox_email, f"State store error: {exc}") from exc

            if stored is None or stored.history_id != desired.history_id or stored.expires_at != desired.expires_at:
                logger.error(
                    "Watch verification mismatch for %s: wrote (%s, %s), read back %s",
                    mailbox_email,
                    desired.history_id,
                    desired.expires_at.isoformat(),
                    None if stored is None else (stored.history_id, stored.expires_at.isoformat()),
                )
                raise PersistenceVerificationFailedError(mailbox_email, "Stored watch does not match what was written.")

            logger.info(
                "Watch registered for %s: historyId=%s expiration=%s",
                mailbox_email,
                stored.history_id,
                stored.expires_at.isoformat(),
            )
            return WatchRegistration(email=mailbox_email, history_id=stored.history_id, expires_at=stored.expires_at)

    def _next_subscription(
        self,
        mailbox_email: str,
        existing: Optional[Subscription],
        response,
        reset_cursor: bool,
    ) -> Subscription:
        now = self.clock()
        if existing is None:
            history_id = response.history_id
        elif reset_cursor or existing.is_stale(now):
            history_id = max(response.history_id, existing.history_id)
        else:
            history_id = existing.history_id
        return Subscription(
            email=mailbox_email,
            history_id=history_id,
            expires_at=response.expires_at,
            updated_at=now,
            renewal_failures=0,
            last_error=None,
        )

    def deregister(self, mailbox_email: str) -> bool:
        """
        Stop the provider watch and delete the subscription row. Returns False when
        no subscription existed.
        """
        mailbox_email = normalize_mailbox(mailbox_email)
        with self.locks.hold(mailbox_email):
            existing = self.state_store.get_subscription(mailbox_email)
            try:
                provider = connect_provider(self.credential_store, self.provider_factory, mailbox_email)
                provider.stop(mailbox_email)
            except Exception as exc:  # noqa: BLE001 - the watch lapses on its own at expiry
                logger.warning("Could not stop Gmail watch for %s: %s", mailbox_email, exc)
            self.state_store.delete_subscription(mailbox_email)
            logger.info("Deregistered mailbox %s", mailbox_email)
            return existing is not None
