"""
Per-mailbox Gmail credentials.

Tokens are minted by ``bootstrap_gmail_token.py`` (or the web "Connect Gmail"
flow) and stored in the ``gmail_tokens`` table. Refreshing an expired access
token and writing the rotated token back happens here and nowhere else.
"""
from __future__ import annotations

import json
import logging
from typing import Callable, Iterable, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google.oauth2.service_account import Credentials as ServiceAccountCredentials

from gmail_watch import DEFAULT_TIMEOUT, GMAIL_READ_SCOPES, GmailProvider, MailProvider, build_gmail_service
from supabase_state import BaseStateStore
from sync_errors import CredentialMissingError

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str, object], MailProvider]


class CredentialStore:
    def get_credential(self, mailbox_email: str):
        """Return usable credentials or raise CredentialMissingError."""
        raise NotImplementedError


class SupabaseCredentialStore(CredentialStore):
    """
    Reads authorised-user token JSON from the state store.
    """

    def __init__(
        self,
        state_store: BaseStateStore,
        *,
        scopes: Iterable[str] = GMAIL_READ_SCOPES,
        request_factory: Callable[[], Request] = Request,
    ) -> None:
        self.state_store = state_store
        self.scopes = list(scopes)
        self._request_factory = request_factory

    def get_credential(self, mailbox_email: str) -> Credentials:
        token_json = self.state_store.get_gmail_token(email=mailbox_email)
        if not token_json:
            raise CredentialMissingError(mailbox_email, "No OAuth token on file.")
        try:
            credentials = Credentials.from_authorized_user_info(json.loads(token_json), scopes=self.scopes)
        except (TypeError, ValueError) as exc:
            raise CredentialMissingError(mailbox_email, f"Stored token is unusable: {exc}") from exc

        if credentials.valid:
            return credentials
        if not credentials.refresh_token:
            raise CredentialMissingError(mailbox_email, "Token expired and no refresh token is stored.")
        try:
            credentials.refresh(self._request_factory())
        except RefreshError as exc:
            raise CredentialMissingError(mailbox_email, f"Token refresh rejected: {exc}") from exc
        logger.info("Refreshed Gmail access token for %s", mailbox_email)
        self.state_store.upsert_gmail_token(email=mailbox_email, token_json=credentials.to_json())
        return credentials


class ServiceAccountCredentialStore(CredentialStore):
    """
    Domain-wide delegation: one service account impersonates every mailbox.
    """

    def __init__(
        self,
        service_account_file: str,
        *,
        delegated_user: Optional[str] = None,
        scopes: Iterable[str] = GMAIL_READ_SCOPES,
    ) -> None:
        self.service_account_file = service_account_file
        self.delegated_user = delegated_user
        self.scopes = list(scopes)

    def get_credential(self, mailbox_email: str) -> ServiceAccountCredentials:
        try:
            credentials = ServiceAccountCredentials.from_service_account_file(
                self.service_account_file,
                scopes=self.scopes,
            )
        except (OSError, ValueError) as exc:
            raise CredentialMissingError(mailbox_email, f"Service account file unusable: {exc}") from exc
        return credentials.with_subject(self.delegated_user or mailbox_email)


def gmail_provider_factory(*, timeout: float = DEFAULT_TIMEOUT) -> ProviderFactory:
    def factory(mailbox_email: str, credentials) -> MailProvider:
        return GmailProvider(build_gmail_service(credentials, timeout=timeout))

    return factory


def connect_provider(
    credential_store: CredentialStore,
    provider_factory: ProviderFactory,
    mailbox_email: str,
) -> MailProvider:
    credentials = credential_store.get_credential(mailbox_email)
    return provider_factory(mailbox_email, credentials)
