"""
Error types raised by the watch/renewal/sync pipeline.

Each public error carries a ``kind`` string so results can be reported to
cron callers and operators without leaking exception classes.
"""
from __future__ import annotations

from typing import Optional


class MailSyncError(RuntimeError):
    """Base class for per-mailbox failures."""

    kind = "MailSyncError"
    retryable = False

    def __init__(self, mailbox_email: str, detail: str = "") -> None:
        self.mailbox_email = mailbox_email
        self.detail = detail
        message = f"{self.kind} for {mailbox_email}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CredentialMissingError(MailSyncError):
    """No usable OAuth token on file; the user has to re-authorise."""

    kind = "CredentialMissing"


class ProviderRegistrationFailedError(MailSyncError):
    kind = "ProviderRegistrationFailed"
    retryable = True


class PersistenceVerificationFailedError(MailSyncError):
    """The provider accepted the watch but local bookkeeping is unconfirmed."""

    kind = "PersistenceVerificationFailed"
    retryable = True


class CursorExpiredError(MailSyncError):
    """Stored cursor is older than the provider's history retention."""

    kind = "CursorExpired"


class FetchFailedError(MailSyncError):
    kind = "FetchFailed"
    retryable = True


class ProviderError(RuntimeError):
    """
    Raw failure from the mail provider (HTTP error, transport error or timeout).
    """

    def __init__(self, detail: str, *, status: Optional[int] = None) -> None:
        self.detail = detail
        self.status = status
        super().__init__(detail if status is None else f"HTTP {status}: {detail}")


class ConcurrentUpdateError(RuntimeError):
    """A conditional write matched no row because another writer got there first."""
