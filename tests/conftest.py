"""
Shared pytest fixtures built on the fakes in tests.fakes.
"""
import pytest

from mailbox_locks import MailboxLocks
from supabase_state import NullStateStore
from sync_errors import ProviderError
from tests.fakes import TOPIC, FakeCredentialStore, FakeProvider, FrozenClock
from watch_manager import WatchManager


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return NullStateStore()


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


@pytest.fixture
def provider_factory(provider):
    return lambda mailbox_email, credentials: provider


@pytest.fixture
def credential_store():
    return FakeCredentialStore(["a@example.com", "b@example.com", "c@example.com"])


@pytest.fixture
def locks():
    return MailboxLocks()


@pytest.fixture
def watch_manager(store, credential_store, provider_factory, locks, clock):
    return WatchManager(
        state_store=store,
        credential_store=credential_store,
        provider_factory=provider_factory,
        topic_name=TOPIC,
        locks=locks,
        clock=clock,
    )


@pytest.fixture
def provider_error():
    return ProviderError("quota exceeded", status=429)
