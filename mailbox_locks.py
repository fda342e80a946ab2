from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


def normalize_mailbox(mailbox_email: str) -> str:
    """Gmail addresses are case-insensitive; rows, tokens and locks are keyed lowercase."""
    return mailbox_email.strip().lower()


class MailboxLocks:
    """
    One re-entrant lock per mailbox. Registration, renewal and sync cycles for the
    same address run under it; different addresses never contend.

    Re-entrant so a sync cycle that escalates to a full resync can re-register the
    watch on the same thread.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, mailbox_email: str) -> threading.RLock:
        key = normalize_mailbox(mailbox_email)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, mailbox_email: str) -> Iterator[None]:
        lock = self._lock_for(mailbox_email)
        with lock:
            yield
