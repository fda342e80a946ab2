"""
Helpers for registering Gmail push notifications and fetching history updates.

These utilities rely on google-auth and google-api-python-client. Install them with:
    pip install google-api-python-client google-auth google-auth-httplib2
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from supabase_state import ChangeBatch, ChangeRecord, MailRecord
from sync_errors import CursorExpiredError, ProviderError

# Scope sets
# - Default read/modify set used for watch registration and history reads
GMAIL_READ_SCOPES = [
    # Modify includes read access, but we also declare readonly explicitly
    # to avoid scope-mismatch surprises with previously-minted tokens.
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.readonly",
]

DEFAULT_TIMEOUT = 30
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")
METADATA_HEADERS = ["From", "To", "Subject", "Date", "Message-ID"]


@dataclass(frozen=True)
class WatchResponse:
    history_id: int
    expires_at: datetime


def epoch_ms_to_datetime(value_ms: Any) -> datetime:
    """Gmail reports watch expiry and internalDate as milliseconds since the epoch."""
    return EPOCH + timedelta(milliseconds=int(value_ms))


def build_gmail_service(credentials, *, timeout: float = DEFAULT_TIMEOUT):
    """
    Create a Gmail API service client whose every request is bounded by ``timeout`` seconds.
    """
    http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build("gmail", "v1", http=http, cache_discovery=False)


def http_error_detail(exc: HttpError) -> str:
    content = getattr(exc, "content", b"")
    try:
        detail = content.decode("utf-8") if isinstance(content, (bytes, bytearray)) else str(content)
    except UnicodeDecodeError:
        detail = str(exc)
    return detail or str(exc)


def safe_execute(callable_request, *, retry_codes: Optional[Sequence[int]] = None, max_attempts: int = 3):
    """
    Execute a Google API request with simple retry logic on selected HTTP status codes.
    """
    retry_codes = set(retry_codes or [500, 502, 503, 504])
    attempts = 0
    while True:
        attempts += 1
        try:
            return callable_request.execute()
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            if status in retry_codes and attempts < max_attempts:
                continue
            raise


def start_watch(
    service,
    *,
    user_id: str,
    topic_name: str,
    label_ids: Sequence[str],
    label_filter_action: str = "include",
) -> Dict[str, Any]:
    """
    Register Gmail push notifications for the mailbox.
    Returns the watch response containing historyId and expiration.
    """
    if label_filter_action not in {"include", "exclude"}:
        raise ValueError("label_filter_action must be 'include' or 'exclude'.")
    body: Dict[str, Any] = {
        "topicName": topic_name,
        "labelIds": list(label_ids),
        "labelFilterAction": label_filter_action,
    }
    return safe_execute(service.users().watch(userId=user_id, body=body))


def stop_watch(service, user_id: str = "me") -> None:
    """Cancel existing Gmail push notifications for the mailbox."""
    safe_execute(service.users().stop(userId=user_id))


def fetch_history(
    service,
    *,
    user_id: str,
    start_history_id: Optional[str],
    history_types: Optional[Sequence[str]] = None,
    max_results: int = 500,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Fetch Gmail history records since start_history_id.
    Returns the API response which includes messages added/deleted, labels applied, etc.
    """
    if not start_history_id:
        raise ValueError("start_history_id is required to fetch history.")

    kwargs: Dict[str, Any] = {
        "userId": user_id,
        "startHistoryId": start_history_id,
        "maxResults": max_results,
    }
    if history_types:
        kwargs["historyTypes"] = list(history_types)
    if page_token:
        kwargs["pageToken"] = page_token

    return safe_execute(service.users().history().list(**kwargs))


def get_message_metadata(service, user_id: str, message_id: str, format_: str = "metadata") -> Dict[str, Any]:
    """
    Fetch a single Gmail message. Use format_ 'metadata' to avoid downloading bodies.
    """
    return safe_execute(
        service.users()
        .messages()
        .get(
            userId=user_id,
            id=message_id,
            format=format_,
            metadataHeaders=METADATA_HEADERS,
        )
    )


def list_message_ids(service, *, user_id: str, max_messages: int) -> List[str]:
    ids: List[str] = []
    page_token: Optional[str] = None
    while len(ids) < max_messages:
        kwargs: Dict[str, Any] = {"userId": user_id, "maxResults": min(500, max_messages - len(ids))}
        if page_token:
            kwargs["pageToken"] = page_token
        response = safe_execute(service.users().messages().list(**kwargs))
        ids.extend(item["id"] for item in response.get("messages", []) or [])
        page_token = response.get("nextPageToken")
        if not page_token:
            break
    return ids[:max_messages]


def parse_gmail_push_data(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Decode Gmail push message payload from Pub/Sub.
    Returns the JSON decoded Gmail notification or None if the message is not for Gmail.
    """
    data = message.get("data")
    if not data:
        return None
    if isinstance(data, bytes):
        decoded_bytes = base64.b64decode(data)
    else:
        decoded_bytes = base64.b64decode(data.encode("utf-8"))
    decoded_json = json.loads(decoded_bytes.decode("utf-8"))
    if "emailAddress" in decoded_json:
        return decoded_json
    return None


def _extract_headers(metadata: Dict[str, Any]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for header in (metadata.get("payload") or {}).get("headers", []) or []:
        name = header.get("name")
        if name:
            headers[name.lower()] = header.get("value", "")
    return headers


def mail_from_metadata(mailbox_email: str, metadata: Dict[str, Any]) -> MailRecord:
    headers = _extract_headers(metadata)
    internal_date = metadata.get("internalDate")
    return MailRecord(
        gmail_id=metadata["id"],
        mailbox_email=mailbox_email,
        thread_id=metadata.get("threadId"),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        snippet=metadata.get("snippet", ""),
        label_ids=tuple(metadata.get("labelIds", []) or []),
        received_at=epoch_ms_to_datetime(internal_date) if internal_date else None,
    )


class MailProvider:
    """
    Provider surface used by the watch manager and the history sync consumer.
    """

    def watch(
        self,
        mailbox_email: str,
        event_categories: Sequence[str],
        delivery_destination: str,
    ) -> WatchResponse:
        raise NotImplementedError

    def stop(self, mailbox_email: str) -> None:
        raise NotImplementedError

    def fetch_changes(self, mailbox_email: str, since_cursor: int) -> ChangeBatch:
        """Return ordered changes after ``since_cursor``; raises CursorExpiredError."""
        raise NotImplementedError

    def list_messages(self, mailbox_email: str, *, max_messages: int) -> List[MailRecord]:
        raise NotImplementedError


class GmailProvider(MailProvider):
    """
    Gmail implementation over an authenticated ``gmail/v1`` service resource.
    """

    def __init__(self, service, *, label_filter_action: str = "include") -> None:
        self.service = service
        self.label_filter_action = label_filter_action

    def _call(self, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            raise ProviderError(http_error_detail(exc), status=int(status) if status else None) from exc
        except (httplib2.HttpLib2Error, GoogleAuthError, OSError) as exc:
            # socket timeouts surface here as TimeoutError (an OSError)
            raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

    def watch(
        self,
        mailbox_email: str,
        event_categories: Sequence[str],
        delivery_destination: str,
    ) -> WatchResponse:
        response = self._call(
            start_watch,
            self.service,
            user_id=mailbox_email,
            topic_name=delivery_destination,
            label_ids=event_categories,
            label_filter_action=self.label_filter_action,
        )
        try:
            return WatchResponse(
                history_id=int(response["historyId"]),
                expires_at=epoch_ms_to_datetime(response["expiration"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ProviderError(f"Malformed watch response: {response!r}") from exc

    def stop(self, mailbox_email: str) -> None:
        self._call(stop_watch, self.service, mailbox_email)

    def fetch_changes(self, mailbox_email: str, since_cursor: int) -> ChangeBatch:
        batch = ChangeBatch(history_id=since_cursor)
        page_token: Optional[str] = None
        while True:
            try:
                response = self._call(
                    fetch_history,
                    self.service,
                    user_id=mailbox_email,
                    start_history_id=str(since_cursor),
                    history_types=HISTORY_TYPES,
                    page_token=page_token,
                )
            except ProviderError as exc:
                # Gmail answers 404 when startHistoryId is outside its retention window.
                if exc.status == 404:
                    raise CursorExpiredError(mailbox_email, exc.detail) from exc
                raise
            for item in response.get("history", []) or []:
                batch.changes.extend(self._changes_from_history(mailbox_email, item))
            if response.get("historyId"):
                batch.history_id = max(batch.history_id or 0, int(response["historyId"]))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return batch

    def list_messages(self, mailbox_email: str, *, max_messages: int) -> List[MailRecord]:
        ids = self._call(list_message_ids, self.service, user_id=mailbox_email, max_messages=max_messages)
        records: List[MailRecord] = []
        for message_id in ids:
            record = self._load_mail(mailbox_email, message_id)
            if record is not None:
                records.append(record)
        return records

    def _load_mail(self, mailbox_email: str, message_id: str) -> Optional[MailRecord]:
        try:
            metadata = self._call(get_message_metadata, self.service, mailbox_email, message_id)
        except ProviderError as exc:
            # Already gone; the matching messageDeleted record arrives in a later page or batch.
            if exc.status == 404:
                return None
            raise
        return mail_from_metadata(mailbox_email, metadata)

    def _changes_from_history(self, mailbox_email: str, item: Dict[str, Any]) -> Iterable[ChangeRecord]:
        history_id = int(item["id"]) if item.get("id") else None
        for entry in item.get("messagesAdded", []) or []:
            message_id = entry["message"]["id"]
            record = self._load_mail(mailbox_email, message_id)
            if record is not None:
                yield ChangeRecord(kind="upsert", gmail_id=message_id, history_id=history_id, mail=record)
        for key in ("labelsAdded", "labelsRemoved"):
            for entry in item.get(key, []) or []:
                message = entry["message"]
                yield ChangeRecord(
                    kind="upsert",
                    gmail_id=message["id"],
                    history_id=history_id,
                    mail=MailRecord(
                        gmail_id=message["id"],
                        mailbox_email=mailbox_email,
                        thread_id=message.get("threadId"),
                        label_ids=tuple(message.get("labelIds", []) or []),
                    ),
                )
        for entry in item.get("messagesDeleted", []) or []:
            yield ChangeRecord(kind="delete", gmail_id=entry["message"]["id"], history_id=history_id)
