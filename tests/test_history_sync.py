"""
Tests for HistorySyncConsumer and MailboxResync.

Covers:
- applying a batch then advancing the cursor
- replaying an interrupted batch
- expired cursors escalating to a full resync
- coalescing of overlapping notifications for one mailbox
"""
import base64
import json
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from credential_store import SupabaseCredentialStore
from history_sync import HistorySyncConsumer, MailboxResync, SyncState
from supabase_state import ChangeBatch, ChangeRecord, MailRecord, NullStateStore
from sync_errors import CursorExpiredError, ProviderError
from tests.fakes import make_subscription

MAILBOX = "a@example.com"


def _mail(gmail_id, subject="hello", labels=("INBOX", "UNREAD")):
    return MailRecord(
        gmail_id=gmail_id,
        mailbox_email=MAILBOX,
        thread_id=f"t-{gmail_id}",
        subject=subject,
        sender="Sender <s@example.com>",
        snippet="...",
        label_ids=tuple(labels),
    )


def _batch(history_id=1005):
    return ChangeBatch(
        changes=[
            ChangeRecord(kind="upsert", gmail_id="m1", history_id=1001, mail=_mail("m1")),
            ChangeRecord(kind="upsert", gmail_id="m2", history_id=1002, mail=_mail("m2", subject="second")),
            ChangeRecord(
                kind="upsert",
                gmail_id="m2",
                history_id=1003,
                mail=MailRecord(gmail_id="m2", mailbox_email=MAILBOX, label_ids=("INBOX", "STARRED")),
            ),
            ChangeRecord(kind="delete", gmail_id="m1", history_id=1004),
        ],
        history_id=history_id,
    )


class FlakyApplyStore(NullStateStore):
    """Fails on the n-th mail write once, like a crash in the middle of a batch."""

    def __init__(self, fail_on_write):
        super().__init__()
        self.fail_on_write = fail_on_write
        self.writes = 0

    def upsert_mail(self, record):
        self.writes += 1
        if self.writes == self.fail_on_write:
            raise requests.ConnectionError("connection reset")
        super().upsert_mail(record)


@pytest.fixture
def consumer(store, credential_store, provider_factory, locks, clock):
    return HistorySyncConsumer(
        state_store=store,
        credential_store=credential_store,
        provider_factory=provider_factory,
        locks=locks,
        clock=clock,
    )


class TestApplyBatch:
    def test_changes_applied_in_order_then_cursor_advances(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [_batch()]

        [result] = consumer.notify(MAILBOX)

        assert result.status == "applied"
        assert result.applied == 4
        assert provider.fetch_calls == [(MAILBOX, 1000)]
        mails = store.list_mail(MAILBOX)
        assert [mail.gmail_id for mail in mails] == ["m2"]
        # The label-only change kept the subject from the earlier upsert.
        assert mails[0].subject == "second"
        assert mails[0].bookmarked is True
        assert mails[0].read is True
        assert store.get_subscription(MAILBOX).history_id == 1005
        assert consumer.state_of(MAILBOX) is SyncState.IDLE

    def test_cursor_never_decreases(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [ChangeBatch(changes=[], history_id=990)]

        [result] = consumer.notify(MAILBOX)

        assert result.history_id == 1000
        assert store.get_subscription(MAILBOX).history_id == 1000

    def test_replaying_a_batch_is_idempotent(self, store):
        once = NullStateStore()
        once.apply_changes(MAILBOX, _batch().changes)
        store.apply_changes(MAILBOX, _batch().changes)
        store.apply_changes(MAILBOX, _batch().changes)

        assert store.list_mail(MAILBOX) == once.list_mail(MAILBOX)

    def test_interrupted_batch_is_refetched_without_advancing(
        self, credential_store, provider_factory, provider, clock
    ):
        store = FlakyApplyStore(fail_on_write=2)
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [_batch()]
        consumer = HistorySyncConsumer(
            state_store=store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            clock=clock,
        )

        [failed] = consumer.notify(MAILBOX)
        assert failed.status == "failed"
        assert store.get_subscription(MAILBOX).history_id == 1000
        assert consumer.state_of(MAILBOX) is SyncState.ERROR

        [retried] = consumer.notify(MAILBOX)
        assert retried.status == "applied"
        assert provider.fetch_calls == [(MAILBOX, 1000), (MAILBOX, 1000)]

        expected = NullStateStore()
        expected.apply_changes(MAILBOX, _batch().changes)
        assert store.list_mail(MAILBOX) == expected.list_mail(MAILBOX)
        assert store.get_subscription(MAILBOX).history_id == 1005


class TestFailures:
    def test_fetch_failure_leaves_cursor_untouched(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [ProviderError("TimeoutError: timed out")]

        [result] = consumer.notify(MAILBOX)

        assert result.status == "failed"
        assert result.error_kind == "FetchFailed"
        assert store.get_subscription(MAILBOX).history_id == 1000
        assert consumer.state_of(MAILBOX) is SyncState.IDLE

    def test_expired_cursor_without_resync_reports_error(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [CursorExpiredError(MAILBOX, "404 notFound")]

        [result] = consumer.notify(MAILBOX)

        assert result.status == "failed"
        assert result.error_kind == "CursorExpired"
        assert consumer.state_of(MAILBOX) is SyncState.ERROR
        assert store.list_mail(MAILBOX) == []
        assert store.get_subscription(MAILBOX).history_id == 1000

    def test_expired_cursor_escalates_to_resync(self, store, credential_store, provider_factory, provider, clock):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [CursorExpiredError(MAILBOX, "404 notFound")]
        resync = MagicMock()
        resync.return_value.imported = 3
        resync.return_value.registration.history_id = 9000
        consumer = HistorySyncConsumer(
            state_store=store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            resync=resync,
            clock=clock,
        )

        [result] = consumer.notify(MAILBOX)

        resync.assert_called_once_with(MAILBOX)
        assert result.status == "resynced"
        assert result.error_kind == "CursorExpired"
        assert result.history_id == 9000
        assert consumer.state_of(MAILBOX) is SyncState.IDLE

    def test_stale_subscription_is_not_used_as_baseline(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, expires_in=-timedelta(minutes=1)))

        [result] = consumer.notify(MAILBOX)

        assert provider.fetch_calls == []
        assert result.error_kind == "SubscriptionStale"

    def test_missing_credentials(self, consumer, store, provider):
        store.insert_subscription(make_subscription("revoked@example.com"))

        [result] = consumer.notify("revoked@example.com")

        assert result.error_kind == "CredentialMissing"
        assert provider.fetch_calls == []

    def test_unknown_mailbox_is_skipped(self, consumer, provider):
        [result] = consumer.notify("stranger@example.com")

        assert result.status == "skipped"
        assert provider.fetch_calls == []


class TestNotifications:
    def test_hint_at_or_below_cursor_skips_fetch(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))

        [result] = consumer.notify(MAILBOX, cursor_hint=1000)

        assert result.status == "up_to_date"
        assert provider.fetch_calls == []

    def test_pubsub_envelope(self, consumer, store, provider):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [_batch()]
        data = base64.b64encode(json.dumps({"emailAddress": MAILBOX, "historyId": 1005}).encode("utf-8"))
        envelope = {"message": {"data": data.decode("ascii"), "messageId": "1"}, "subscription": "s"}

        result = consumer.handle_pubsub_envelope(envelope)

        assert result["emailAddress"] == MAILBOX
        assert result["results"][0]["status"] == "applied"
        assert result["results"][0]["historyId"] == "1005"

    def test_non_gmail_envelope_is_ignored(self, consumer):
        assert consumer.handle_pubsub_envelope({"message": {}}) is None

    def test_overlapping_notifications_coalesce_into_one_cycle(self, store, credential_store, provider, clock):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        fetching = threading.Event()
        release = threading.Event()
        active = []
        overlaps = []

        def slow_first_fetch(mailbox, since):
            if since == 1000:
                fetching.set()
                assert release.wait(5)
                return ChangeBatch(changes=[ChangeRecord(kind="upsert", gmail_id="m1", mail=_mail("m1"))], history_id=1001)
            return ChangeBatch(changes=[ChangeRecord(kind="upsert", gmail_id="m2", mail=_mail("m2"))], history_id=1002)

        provider.batches[MAILBOX] = [slow_first_fetch]
        original_apply = store.apply_changes

        def tracking_apply(mailbox, changes):
            if active:
                overlaps.append(mailbox)
            active.append(mailbox)
            try:
                return original_apply(mailbox, changes)
            finally:
                active.pop()

        store.apply_changes = tracking_apply
        consumer = HistorySyncConsumer(
            state_store=store,
            credential_store=credential_store,
            provider_factory=lambda mailbox, credentials: provider,
            clock=clock,
        )

        first_results = []
        worker = threading.Thread(target=lambda: first_results.extend(consumer.notify(MAILBOX)))
        worker.start()
        assert fetching.wait(5)
        assert consumer.state_of(MAILBOX) is SyncState.FETCHING

        # Two more pushes land while the first cycle is fetching.
        assert consumer.notify(MAILBOX) == []
        assert consumer.notify(MAILBOX) == []

        release.set()
        worker.join(5)

        assert not worker.is_alive()
        assert [result.status for result in first_results] == ["applied", "applied"]
        assert provider.fetch_calls == [(MAILBOX, 1000), (MAILBOX, 1001)]
        assert overlaps == []
        assert store.get_subscription(MAILBOX).history_id == 1002


class TestMailboxResync:
    def test_bulk_import_then_fresh_cursor(self, store, credential_store, provider_factory, provider, watch_manager):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.messages[MAILBOX] = [_mail("m1"), _mail("m2")]
        provider.watch_cursor[MAILBOX] = 7000
        resync = MailboxResync(
            state_store=store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            watch_manager=watch_manager,
            max_messages=10,
        )

        outcome = resync.resync(MAILBOX)

        assert outcome.imported == 2
        assert outcome.registration.history_id == 7000
        assert [mail.gmail_id for mail in store.list_mail(MAILBOX)] == ["m1", "m2"]
        assert store.get_subscription(MAILBOX).history_id == 7000

    def test_resync_inside_a_sync_cycle(self, store, credential_store, provider_factory, provider, watch_manager, locks, clock):
        store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
        provider.batches[MAILBOX] = [CursorExpiredError(MAILBOX, "404")]
        provider.messages[MAILBOX] = [_mail("m9")]
        provider.watch_cursor[MAILBOX] = 8000
        resync = MailboxResync(
            state_store=store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            watch_manager=watch_manager,
        )
        consumer = HistorySyncConsumer(
            state_store=store,
            credential_store=credential_store,
            provider_factory=provider_factory,
            locks=locks,
            resync=resync,
            clock=clock,
        )

        [result] = consumer.notify(MAILBOX)

        assert result.status == "resynced"
        assert result.applied == 1
        assert store.get_subscription(MAILBOX).history_id == 8000


class TokenOutageStore(NullStateStore):
    def get_gmail_token(self, *, email):
        raise requests.ConnectionError("supabase unreachable")


def test_token_backend_outage_is_a_fetch_failure(provider_factory, provider, clock):
    store = TokenOutageStore()
    store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
    consumer = HistorySyncConsumer(
        state_store=store,
        credential_store=SupabaseCredentialStore(store),
        provider_factory=provider_factory,
        clock=clock,
    )

    [result] = consumer.notify(MAILBOX)

    assert result.status == "failed"
    assert result.error_kind == "FetchFailed"
    assert "supabase unreachable" in result.detail
    assert provider.fetch_calls == []
    assert store.get_subscription(MAILBOX).history_id == 1000


def test_mixed_case_push_address_matches_the_subscription(consumer, store, provider):
    store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
    provider.batches[MAILBOX] = [_batch()]

    [result] = consumer.notify("A@Example.com", cursor_hint=1005)

    assert result.status == "applied"
    assert provider.fetch_calls == [(MAILBOX, 1000)]


def test_queued_cycle_still_runs_when_the_current_one_raises(store, credential_store, provider, clock):
    store.insert_subscription(make_subscription(MAILBOX, history_id=1000))
    fetching = threading.Event()
    release = threading.Event()
    calls = []

    def crash_then_succeed(mailbox, since):
        calls.append(since)
        if len(calls) == 1:
            fetching.set()
            assert release.wait(5)
            raise RuntimeError("unexpected payload")
        return ChangeBatch(changes=[ChangeRecord(kind="upsert", gmail_id="m1", mail=_mail("m1"))], history_id=1001)

    provider.batches[MAILBOX] = [crash_then_succeed]
    consumer = HistorySyncConsumer(
        state_store=store,
        credential_store=credential_store,
        provider_factory=lambda mailbox, credentials: provider,
        clock=clock,
    )

    errors = []

    def first_notification():
        try:
            consumer.notify(MAILBOX)
        except RuntimeError as exc:
            errors.append(exc)

    worker = threading.Thread(target=first_notification)
    worker.start()
    assert fetching.wait(5)
    assert consumer.notify(MAILBOX) == []
    release.set()
    worker.join(5)

    assert not worker.is_alive()
    assert [str(exc) for exc in errors] == ["unexpected payload"]
    assert provider.fetch_calls == [(MAILBOX, 1000), (MAILBOX, 1000)]
    assert store.get_subscription(MAILBOX).history_id == 1001
    assert consumer.state_of(MAILBOX) is SyncState.IDLE

    # The slot is free again for the next push.
    [result] = consumer.notify(MAILBOX)
    assert result.status == "applied"
