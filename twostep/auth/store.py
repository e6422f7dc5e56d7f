"""
Credential storage.

The login core only needs get/put over immutable CredentialRecord
values; any backend (dict, SQL table, Redis hash) can implement
CredentialStore. InMemoryCredentialStore is the reference backend used
by the tests and the walkthrough.
"""

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, Hashable, Iterator, Optional

from .secret import Secret


@dataclass(frozen=True)
class CredentialRecord:
    """Stored credentials for one user. Replaced whole, never edited in place."""
    user_id: str
    password_hash: str
    mfa_secret: Secret
    enrolled: bool = False
    created_at: float = field(default_factory=time.time)

    def with_secret(self, secret: Secret) -> 'CredentialRecord':
        """Copy with a rotated secret; re-enrollment is required."""
        return replace(self, mfa_secret=secret, enrolled=False)

    def mark_enrolled(self) -> 'CredentialRecord':
        return replace(self, enrolled=True)


class CredentialStore(ABC):
    """Key-value store mapping user id to CredentialRecord."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[CredentialRecord]:
        """Return the record for `user_id`, or None."""

    @abstractmethod
    def put(self, user_id: str, record: CredentialRecord) -> None:
        """Store `record` under `user_id`, replacing any previous one."""

    @abstractmethod
    def compare_and_put(self, user_id: str, expected: CredentialRecord,
                        record: CredentialRecord) -> bool:
        """
        Atomically replace `expected` with `record`.

        Returns:
            False (and stores nothing) if the current record is not `expected`
        """


class InMemoryCredentialStore(CredentialStore):
    """Thread-safe dict-backed store."""

    def __init__(self):
        self._records: Dict[str, CredentialRecord] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[CredentialRecord]:
        with self._lock:
            return self._records.get(user_id)

    def put(self, user_id: str, record: CredentialRecord) -> None:
        if record.user_id != user_id:
            raise ValueError("record.user_id does not match key")
        with self._lock:
            self._records[user_id] = record

    def compare_and_put(self, user_id: str, expected: CredentialRecord,
                        record: CredentialRecord) -> bool:
        if record.user_id != user_id:
            raise ValueError("record.user_id does not match key")
        with self._lock:
            if self._records.get(user_id) != expected:
                return False
            self._records[user_id] = record
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._records


class KeyedLock:
    """
    One lock per key.

    Serializes work on a single user or ticket without blocking
    unrelated keys. Locks are dropped once nobody holds or waits on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._refcounts: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._refcounts[key] = 0
            self._refcounts[key] += 1

        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refcounts[key] -= 1
                if self._refcounts[key] == 0:
                    del self._refcounts[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
