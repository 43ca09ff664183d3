"""
In-memory transactional storage.

Rows are plain dicts keyed by id. Every mutation goes through a
``Transaction``: it takes per-row locks, stages writes, and applies them in
one step when the ``with storage.transaction()`` block exits cleanly. An
exception inside the block discards every staged write.

Row locks are created on first use and kept for the life of the storage,
like the rows themselves, which are never deleted. A row keeps one lock
object for good; evicting it would let two callers lock the same row
through different locks.
"""

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Hashable, Iterator, Optional
from uuid import UUID


class RowLockedError(Exception):
    def __init__(self, table: str, key: Hashable):
        super().__init__(f"{table} row {key} is locked by another operation")
        self.table = table
        self.key = key


class Transaction:
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._writes: dict[tuple[str, Hashable], Any] = {}
        self._held: dict[tuple[str, Hashable], threading.Lock] = {}

    def lock(self, table: str, key: Hashable, timeout: Optional[float] = None) -> None:
        """Lock a row for the rest of the transaction.

        With ``timeout=None`` the lock is tried once without waiting.
        """
        if (table, key) in self._held:
            return
        row_lock = self._storage.row_lock(table, key)
        if timeout is None:
            acquired = row_lock.acquire(blocking=False)
        else:
            acquired = row_lock.acquire(timeout=timeout)
        if not acquired:
            raise RowLockedError(table, key)
        self._held[(table, key)] = row_lock

    def get(self, table: str, key: Hashable) -> Optional[Any]:
        staged = self._writes.get((table, key))
        if staged is not None:
            return staged
        row = self._storage.table(table).get(key)
        return copy.deepcopy(row) if row is not None else None

    def put(self, table: str, key: Hashable, row: Any) -> None:
        self._writes[(table, key)] = row

    def commit(self) -> None:
        with self._storage.commit_lock:
            for (table, key), row in self._writes.items():
                self._storage.table(table)[key] = row
        self._writes.clear()

    def release(self) -> None:
        for row_lock in self._held.values():
            row_lock.release()
        self._held.clear()


class InMemoryStorage:
    def __init__(self):
        self.accounts: dict[UUID, dict] = {}
        self.reservations: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.payouts: dict[UUID, dict] = {}
        self.payments: dict[UUID, dict] = {}
        self.refunds: dict[UUID, dict] = {}
        self.batches: dict[UUID, dict] = {}
        self.batch_sequences: dict[int, int] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.reconciliation_events: list[dict] = []

        self.commit_lock = threading.RLock()
        self._locks: dict[tuple[str, Hashable], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def table(self, name: str) -> dict:
        return getattr(self, name)

    def row_lock(self, table: str, key: Hashable) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((table, key), threading.Lock())

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        tx = Transaction(self)
        try:
            yield tx
            tx.commit()
        finally:
            tx.release()

    def get(self, table: str, key: Hashable) -> Optional[dict]:
        with self.commit_lock:
            row = self.table(table).get(key)
            return copy.deepcopy(row) if row is not None else None

    def values(self, table: str) -> list[dict]:
        with self.commit_lock:
            return copy.deepcopy(list(self.table(table).values()))

    def next_batch_sequence(self, year: int) -> int:
        with self.commit_lock:
            seq = self.batch_sequences.get(year, 0) + 1
            self.batch_sequences[year] = seq
            return seq

    def record_reconciliation_event(self, kind: str, **details: Any) -> dict:
        event = {"kind": kind, "recorded_at": datetime.now(timezone.utc), **details}
        with self.commit_lock:
            self.reconciliation_events.append(event)
        return event
