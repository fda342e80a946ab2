import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

import requests

from sync_errors import ConcurrentUpdateError, CredentialMissingError

logger = logging.getLogger(__name__)

WATCH_TABLE = "gmail_watch"
MAILS_TABLE = "mails"
TOKENS_TABLE = "gmail_tokens"
DEFAULT_TIMEOUT = 30
BULK_CHUNK_SIZE = 100


class SupabaseConfigurationError(RuntimeError):
    """Raised when Supabase credentials are missing."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Subscription:
    """
    Push subscription state for one mailbox (one row in ``gmail_watch``).
    """

    email: str
    history_id: int
    expires_at: datetime
    updated_at: datetime
    renewal_failures: int = 0
    last_error: Optional[str] = None

    def is_stale(self, now: datetime) -> bool:
        return self.expires_at <= now

    def expires_within(self, window: timedelta, now: datetime) -> bool:
        return self.expires_at <= now + window

    def is_degraded(self, threshold: int, now: datetime) -> bool:
        if self.renewal_failures >= threshold:
            return True
        return self.renewal_failures > 0 and self.is_stale(now)

    @property
    def needs_reauthorization(self) -> bool:
        """The last renewal failed for lack of a usable token; only a new registration clears it."""
        return bool(self.last_error and self.last_error.startswith(f"{CredentialMissingError.kind}:"))

    def to_row(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "history_id": self.history_id,
            "expiration": to_iso(self.expires_at),
            "updated_at": to_iso(self.updated_at),
            "renewal_failures": self.renewal_failures,
            "last_error": self.last_error,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "Subscription":
        return Subscription(
            email=row["email"],
            history_id=int(row["history_id"]),
            expires_at=parse_timestamp(row["expiration"]),
            updated_at=parse_timestamp(row["updated_at"]),
            renewal_failures=int(row.get("renewal_failures") or 0),
            last_error=row.get("last_error"),
        )


@dataclass
class MailRecord:
    """
    A message row in the ``mails`` table. Fields left as None are not written,
    so a label-only change leaves subject/sender untouched.
    """

    gmail_id: str
    mailbox_email: str
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    sender: Optional[str] = None
    snippet: Optional[str] = None
    label_ids: Optional[Tuple[str, ...]] = None
    received_at: Optional[datetime] = None

    @property
    def read(self) -> Optional[bool]:
        if self.label_ids is None:
            return None
        return "UNREAD" not in self.label_ids

    @property
    def bookmarked(self) -> Optional[bool]:
        if self.label_ids is None:
            return None
        return "STARRED" in self.label_ids

    def to_row(self, *, include_empty: bool = False) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "gmail_id": self.gmail_id,
            "mailbox_email": self.mailbox_email,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "sender": self.sender,
            "snippet": self.snippet,
            "label_ids": list(self.label_ids) if self.label_ids is not None else None,
            "read": self.read,
            "bookmarked": self.bookmarked,
            "received_at": to_iso(self.received_at) if self.received_at else None,
        }
        if include_empty:
            return row
        return {key: value for key, value in row.items() if value is not None}

    def merged_with(self, update: "MailRecord") -> "MailRecord":
        changes = {
            name: getattr(update, name)
            for name in ("thread_id", "subject", "sender", "snippet", "label_ids", "received_at")
            if getattr(update, name) is not None
        }
        return replace(self, **changes)


@dataclass(frozen=True)
class ChangeRecord:
    """One mailbox change from the provider's incremental history."""

    kind: Literal["upsert", "delete"]
    gmail_id: str
    history_id: Optional[int] = None
    mail: Optional[MailRecord] = None


@dataclass
class ChangeBatch:
    changes: List[ChangeRecord] = field(default_factory=list)
    history_id: Optional[int] = None


def _check_monotonic(subscription: Subscription, expected_history_id: int) -> None:
    if subscription.history_id < expected_history_id:
        raise ValueError(
            f"Refusing to move cursor backward for {subscription.email}: "
            f"{expected_history_id} -> {subscription.history_id}"
        )


class BaseStateStore:
    # --- Subscriptions -----------------------------------------------------

    def get_subscription(self, email: str) -> Optional[Subscription]:
        raise NotImplementedError

    def list_subscriptions(self, *, expiring_before: Optional[datetime] = None) -> List[Subscription]:
        raise NotImplementedError

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new row; raises ConcurrentUpdateError when the mailbox already has one."""
        raise NotImplementedError

    def compare_and_set_subscription(
        self,
        subscription: Subscription,
        *,
        expected_history_id: int,
        expected_updated_at: datetime,
    ) -> Subscription:
        """
        Overwrite the row only if it still carries the expected cursor and timestamp.
        Raises ConcurrentUpdateError when no row matched.
        """
        raise NotImplementedError

    def record_renewal_failure(self, email: str, detail: str, *, min_failures: int = 0) -> Optional[Subscription]:
        """Increment the failure count (raised to at least ``min_failures``) and store ``detail``."""
        raise NotImplementedError

    def delete_subscription(self, email: str) -> None:
        raise NotImplementedError

    # --- Mailbox store -----------------------------------------------------

    def upsert_mail(self, record: MailRecord) -> None:
        raise NotImplementedError

    def delete_mail(self, *, mailbox_email: str, gmail_id: str) -> None:
        raise NotImplementedError

    def apply_changes(self, mailbox_email: str, changes: Iterable[ChangeRecord]) -> int:
        """Apply change records in order. Returns the number applied."""
        applied = 0
        for change in changes:
            if change.kind == "delete":
                self.delete_mail(mailbox_email=mailbox_email, gmail_id=change.gmail_id)
            else:
                mail = change.mail or MailRecord(gmail_id=change.gmail_id, mailbox_email=mailbox_email)
                self.upsert_mail(mail)
            applied += 1
        return applied

    def bulk_import(self, mailbox_email: str, records: Iterable[MailRecord]) -> int:
        applied = 0
        for record in records:
            self.upsert_mail(record)
            applied += 1
        return applied

    # --- OAuth token storage -----------------------------------------------

    def get_gmail_token(self, *, email: str) -> Optional[str]:
        """Return serialized OAuth credential JSON for the mailbox, if stored."""
        return None

    def upsert_gmail_token(self, *, email: str, token_json: str) -> None:
        """Persist or replace serialized OAuth credential JSON for the mailbox."""
        return None


class SupabaseStateStore(BaseStateStore):
    """
    Minimal Supabase REST client for Gmail watch state, mail rows and OAuth tokens.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        service_role_key: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.url = url or os.getenv("SUPABASE_URL")
        self.key = service_role_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not self.url or not self.key:
            raise SupabaseConfigurationError("Supabase URL and service role key must be configured.")
        self.url = self.url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _rest(self, path: str) -> str:
        return f"{self.url}/rest/v1/{path.lstrip('/')}"

    # --- Subscriptions -----------------------------------------------------

    def get_subscription(self, email: str) -> Optional[Subscription]:
        response = self.session.get(
            self._rest(WATCH_TABLE),
            params={"email": f"eq.{email}", "select": "*", "limit": 1},
            headers=self._headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not data:
            return None
        return Subscription.from_row(data[0])

    def list_subscriptions(self, *, expiring_before: Optional[datetime] = None) -> List[Subscription]:
        params: Dict[str, Any] = {"select": "*", "order": "expiration.asc"}
        if expiring_before is not None:
            params["expiration"] = f"lte.{to_iso(expiring_before)}"
        response = self.session.get(
            self._rest(WATCH_TABLE),
            params=params,
            headers=self._headers,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return [Subscription.from_row(row) for row in response.json() or []]

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        response = self.session.post(
            self._rest(WATCH_TABLE),
            headers=self._headers,
            data=json.dumps(subscription.to_row()),
            timeout=self.timeout,
        )
        if response.status_code == 409:
            raise ConcurrentUpdateError(f"Subscription for {subscription.email} already exists.")
        response.raise_for_status()
        # Some Supabase configurations may still return 204 No Content.
        if not response.content:
            return subscription
        return Subscription.from_row(response.json()[0])

    def compare_and_set_subscription(
        self,
        subscription: Subscription,
        *,
        expected_history_id: int,
        expected_updated_at: datetime,
    ) -> Subscription:
        _check_monotonic(subscription, expected_history_id)
        payload = subscription.to_row()
        payload.pop("email")
        response = self.session.patch(
            self._rest(WATCH_TABLE),
            params={
                "email": f"eq.{subscription.email}",
                "history_id": f"eq.{expected_history_id}",
                "updated_at": f"eq.{to_iso(expected_updated_at)}",
            },
            headers=self._headers,
            data=json.dumps(payload),
            timeout=self.timeout,
        )
        response.raise_for_status()
        rows = response.json() if response.content else []
        if not rows:
            raise ConcurrentUpdateError(
                f"Subscription for {subscription.email} changed since cursor {expected_history_id} was read."
            )
        return Subscription.from_row(rows[0])

    def record_renewal_failure(self, email: str, detail: str, *, min_failures: int = 0) -> Optional[Subscription]:
        current = self.get_subscription(email)
        if current is None:
            return None
        response = self.session.patch(
            self._rest(WATCH_TABLE),
            params={"email": f"eq.{email}"},
            headers=self._headers,
            data=json.dumps(
                {"renewal_failures": max(current.renewal_failures + 1, min_failures), "last_error": detail}
            ),
            timeout=self.timeout,
        )
        response.raise_for_status()
        rows = response.json() if response.content else []
        if not rows:
            return None
        return Subscription.from_row(rows[0])

    def delete_subscription(self, email: str) -> None:
        response = self.session.delete(
            self._rest(WATCH_TABLE),
            params={"email": f"eq.{email}"},
            headers=self._headers,
            timeout=self.timeout,
        )
        response.raise_for_status()

    # --- Mailbox store -----------------------------------------------------

    def _upsert_mail_rows(self, rows: List[Dict[str, Any]]) -> None:
        response = self.session.post(
            self._rest(MAILS_TABLE),
            params={"on_conflict": "mailbox_email,gmail_id"},
            headers={**self._headers, "Prefer": "return=minimal,resolution=merge-duplicates"},
            data=json.dumps(rows),
            timeout=self.timeout,
        )
        response.raise_for_status()

    def upsert_mail(self, record: MailRecord) -> None:
        self._upsert_mail_rows([record.to_row()])

    def delete_mail(self, *, mailbox_email: str, gmail_id: str) -> None:
        response = self.session.delete(
            self._rest(MAILS_TABLE),
            params={
                "mailbox_email": f"eq.{mailbox_email}",
                "gmail_id": f"eq.{gmail_id}",
            },
            headers=self._headers,
            timeout=self.timeout,
        )
        response.raise_for_status()

    def bulk_import(self, mailbox_email: str, records: Iterable[MailRecord]) -> int:
        # PostgREST bulk inserts require identical keys on every row.
        rows = [record.to_row(include_empty=True) for record in records]
        for start in range(0, len(rows), BULK_CHUNK_SIZE):
            self._upsert_mail_rows(rows[start : start + BULK_CHUNK_SIZE])
        return len(rows)

    # --- OAuth token storage ----------------------------------------------

    def get_gmail_token(self, *, email: str) -> Optional[str]:
        response = self.session.get(
            self._rest(TOKENS_TABLE),
            params={"email": f"eq.{email}", "select": "token_json", "limit": 1},
            headers=self._headers,
            timeout=self.timeout,
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        items = response.json() or []
        if not items:
            return None
        token_json = items[0].get("token_json")
        # token_json might already be a string or a dict depending on PostgREST settings
        if isinstance(token_json, str):
            return token_json
        if isinstance(token_json, dict):
            return json.dumps(token_json)
        return None

    def upsert_gmail_token(self, *, email: str, token_json: str) -> None:
        payload = {"email": email, "token_json": token_json, "updated_at": to_iso(utc_now())}
        try:
            response = self.session.post(
                self._rest(TOKENS_TABLE),
                headers={**self._headers, "Prefer": "return=minimal,resolution=merge-duplicates"},
                data=json.dumps(payload),
                timeout=self.timeout,
            )
            # Some configurations return 201, some 204
            if response.status_code not in (200, 201, 204):
                response.raise_for_status()
        except requests.RequestException as exc:
            # The refreshed token stays valid in memory; the next refresh will retry the write.
            logger.warning("Could not persist refreshed token for %s: %s", email, exc)


class NullStateStore(BaseStateStore):
    """
    In-memory fallback when Supabase is not yet configured.
    """

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Subscription] = {}
        self.mails: Dict[Tuple[str, str], MailRecord] = {}
        self.tokens: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_subscription(self, email: str) -> Optional[Subscription]:
        with self._lock:
            current = self.subscriptions.get(email)
            return replace(current) if current else None

    def list_subscriptions(self, *, expiring_before: Optional[datetime] = None) -> List[Subscription]:
        with self._lock:
            items = [replace(sub) for sub in self.subscriptions.values()]
        if expiring_before is not None:
            items = [sub for sub in items if sub.expires_at <= expiring_before]
        return sorted(items, key=lambda sub: sub.expires_at)

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.email in self.subscriptions:
                raise ConcurrentUpdateError(f"Subscription for {subscription.email} already exists.")
            self.subscriptions[subscription.email] = replace(subscription)
        return replace(subscription)

    def compare_and_set_subscription(
        self,
        subscription: Subscription,
        *,
        expected_history_id: int,
        expected_updated_at: datetime,
    ) -> Subscription:
        _check_monotonic(subscription, expected_history_id)
        with self._lock:
            current = self.subscriptions.get(subscription.email)
            if (
                current is None
                or current.history_id != expected_history_id
                or current.updated_at != expected_updated_at
            ):
                raise ConcurrentUpdateError(
                    f"Subscription for {subscription.email} changed since cursor {expected_history_id} was read."
                )
            self.subscriptions[subscription.email] = replace(subscription)
        return replace(subscription)

    def record_renewal_failure(self, email: str, detail: str, *, min_failures: int = 0) -> Optional[Subscription]:
        with self._lock:
            current = self.subscriptions.get(email)
            if current is None:
                return None
            updated = replace(
                current,
                renewal_failures=max(current.renewal_failures + 1, min_failures),
                last_error=detail,
            )
            self.subscriptions[email] = updated
            return replace(updated)

    def delete_subscription(self, email: str) -> None:
        with self._lock:
            self.subscriptions.pop(email, None)

    def upsert_mail(self, record: MailRecord) -> None:
        key = (record.mailbox_email, record.gmail_id)
        with self._lock:
            existing = self.mails.get(key)
            self.mails[key] = existing.merged_with(record) if existing else replace(record)

    def delete_mail(self, *, mailbox_email: str, gmail_id: str) -> None:
        with self._lock:
            self.mails.pop((mailbox_email, gmail_id), None)

    def list_mail(self, mailbox_email: str) -> List[MailRecord]:
        with self._lock:
            return [record for (owner, _), record in sorted(self.mails.items()) if owner == mailbox_email]

    # --- OAuth token storage ----------------------------------------------
    def get_gmail_token(self, *, email: str) -> Optional[str]:
        return self.tokens.get(email)

    def upsert_gmail_token(self, *, email: str, token_json: str) -> None:
        self.tokens[email] = token_json


def get_state_store(
    url: Optional[str] = None,
    service_role_key: Optional[str] = None,
    *,
    timeout: float = DEFAULT_TIMEOUT,
) -> BaseStateStore:
    try:
        return SupabaseStateStore(url=url, service_role_key=service_role_key, timeout=timeout)
    except SupabaseConfigurationError:
        logger.warning("Supabase is not configured; using in-memory state.")
        return NullStateStore()
