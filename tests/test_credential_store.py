"""
Tests for SupabaseCredentialStore token loading and refresh.
"""
import json

import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from credential_store import SupabaseCredentialStore, connect_provider
from supabase_state import NullStateStore
from sync_errors import CredentialMissingError

MAILBOX = "a@example.com"


def _token(**overrides):
    info = {
        "client_id": "client.apps.googleusercontent.com",
        "client_secret": "secret",
        "refresh_token": "refresh-1",
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    info.update(overrides)
    return json.dumps(info)


@pytest.fixture
def store():
    return NullStateStore()


@pytest.fixture
def credentials(store):
    return SupabaseCredentialStore(store, request_factory=lambda: None)


def test_no_token_on_file(credentials):
    with pytest.raises(CredentialMissingError) as excinfo:
        credentials.get_credential(MAILBOX)

    assert excinfo.value.kind == "CredentialMissing"


def test_unparsable_token(credentials, store):
    store.upsert_gmail_token(email=MAILBOX, token_json="not json")

    with pytest.raises(CredentialMissingError):
        credentials.get_credential(MAILBOX)


def test_valid_token_is_used_as_is(credentials, store, monkeypatch):
    store.upsert_gmail_token(email=MAILBOX, token_json=_token(token="access-1", expiry="2099-01-01T00:00:00Z"))
    monkeypatch.setattr(Credentials, "refresh", lambda self, request: pytest.fail("unexpected refresh"))

    result = credentials.get_credential(MAILBOX)

    assert result.token == "access-1"


def test_expired_token_is_refreshed_and_written_back(credentials, store, monkeypatch):
    store.upsert_gmail_token(email=MAILBOX, token_json=_token())

    def fake_refresh(self, request):
        self.token = "access-2"

    monkeypatch.setattr(Credentials, "refresh", fake_refresh)

    result = credentials.get_credential(MAILBOX)

    assert result.token == "access-2"
    assert json.loads(store.tokens[MAILBOX])["token"] == "access-2"


def test_revoked_refresh_token(credentials, store, monkeypatch):
    store.upsert_gmail_token(email=MAILBOX, token_json=_token())

    def fake_refresh(self, request):
        raise RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(Credentials, "refresh", fake_refresh)

    with pytest.raises(CredentialMissingError) as excinfo:
        credentials.get_credential(MAILBOX)

    assert "invalid_grant" in excinfo.value.detail


def test_empty_refresh_token(credentials, store):
    store.upsert_gmail_token(email=MAILBOX, token_json=_token(refresh_token=""))

    with pytest.raises(CredentialMissingError):
        credentials.get_credential(MAILBOX)


def test_connect_provider_passes_credentials(credentials, store):
    store.upsert_gmail_token(email=MAILBOX, token_json=_token(token="access-1", expiry="2099-01-01T00:00:00Z"))
    seen = []

    provider = connect_provider(credentials, lambda mailbox, creds: seen.append((mailbox, creds.token)) or "provider", MAILBOX)

    assert provider == "provider"
    assert seen == [(MAILBOX, "access-1")]
