import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import (
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LedgerTimeoutError,
)
from .models import (
    Account,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    ReservationStatus,
    ReservationToken,
    WalletSummary,
)
from .storage import InMemoryStorage, RowLockedError, Transaction

log = logging.getLogger(__name__)


class WalletLedger:
    """Account balances with a non-negative floor.

    Funds leave an account in two steps: ``reserve`` moves them from the
    available balance to the held balance, ``commit`` writes the debit entry
    and drops the hold, ``release`` returns a hold to the available balance.
    Every call accepts an enclosing transaction so that balance changes
    commit together with the caller's own writes.
    """

    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def open_account(
        self,
        opening_balance: Decimal = Decimal("0.00"),
        currency: Optional[str] = None,
        account_id: Optional[UUID] = None,
    ) -> Account:
        if opening_balance < 0:
            raise InvalidAmountError("Opening balance cannot be negative")

        account_id = account_id or uuid4()
        now = datetime.now(timezone.utc)
        with self.storage.transaction() as tx:
            tx.put("accounts", account_id, {
                "id": account_id,
                "available_balance": Decimal("0.00"),
                "held_balance": Decimal("0.00"),
                "currency": currency or self.settings.currency,
                "version": 0,
                "created_at": now,
            })
            if opening_balance > 0:
                self.credit(account_id, opening_balance, reference=f"opening:{account_id}",
                            description="Opening balance", tx=tx)

        log.info("Opened account %s with balance %s", account_id, opening_balance)
        return self.get_account(account_id)

    def get_account(self, account_id: UUID) -> Account:
        row = self.storage.get("accounts", account_id)
        if not row:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return Account(**row)

    def reserve(
        self, account_id: UUID, amount: Decimal, reference: str, tx: Optional[Transaction] = None
    ) -> ReservationToken:
        if amount <= 0:
            raise InvalidAmountError(f"Reservation amount must be positive, got {amount}")

        with self._transaction(tx) as t:
            account = self._locked_account(t, account_id)
            if account["available_balance"] < amount:
                raise InsufficientBalanceError(
                    f"Account {account_id} has {account['available_balance']} available, "
                    f"{amount} required"
                )

            account["available_balance"] -= amount
            account["held_balance"] += amount
            account["version"] += 1

            reservation = {
                "id": uuid4(),
                "account_id": account_id,
                "amount": amount,
                "reference": reference,
                "status": ReservationStatus.HELD,
                "created_at": datetime.now(timezone.utc),
            }
            t.put("accounts", account_id, account)
            t.put("reservations", reservation["id"], reservation)
            return ReservationToken(**reservation)

    def commit(
        self, token: ReservationToken, description: str = "", tx: Optional[Transaction] = None
    ) -> LedgerEntry:
        with self._transaction(tx) as t:
            account = self._locked_account(t, token.account_id)
            reservation = self._held_reservation(t, token)

            account["held_balance"] -= reservation["amount"]
            account["version"] += 1
            reservation["status"] = ReservationStatus.COMMITTED

            entry = self._entry(
                account, EntryType.DEBIT, -reservation["amount"], reservation["reference"],
                description or f"Debit for {reservation['reference']}",
            )
            t.put("accounts", token.account_id, account)
            t.put("reservations", token.id, reservation)
            t.put("ledger_entries", entry["id"], entry)

        log.info("Debited %s from account %s (%s)", token.amount, token.account_id, token.reference)
        return LedgerEntry(**entry)

    def release(self, token: ReservationToken, tx: Optional[Transaction] = None) -> ReservationToken:
        with self._transaction(tx) as t:
            account = self._locked_account(t, token.account_id)
            reservation = self._held_reservation(t, token)

            account["held_balance"] -= reservation["amount"]
            account["available_balance"] += reservation["amount"]
            account["version"] += 1
            reservation["status"] = ReservationStatus.RELEASED

            t.put("accounts", token.account_id, account)
            t.put("reservations", token.id, reservation)
            return ReservationToken(**reservation)

    def debit(
        self, account_id: UUID, amount: Decimal, reference: str, description: str = "",
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        with self._transaction(tx) as t:
            token = self.reserve(account_id, amount, reference, tx=t)
            return self.commit(token, description, tx=t)

    def credit(
        self,
        account_id: UUID,
        amount: Decimal,
        reference: str,
        description: str = "",
        entry_type: EntryType = EntryType.CREDIT,
        tx: Optional[Transaction] = None,
    ) -> LedgerEntry:
        if amount <= 0:
            raise InvalidAmountError(f"Credit amount must be positive, got {amount}")

        with self._transaction(tx) as t:
            account = self._locked_account(t, account_id)
            account["available_balance"] += amount
            account["version"] += 1

            entry = self._entry(account, entry_type, amount, reference,
                                description or f"Credit for {reference}")
            t.put("accounts", account_id, account)
            t.put("ledger_entries", entry["id"], entry)

        log.info("Credited %s to account %s (%s)", amount, account_id, reference)
        return LedgerEntry(**entry)

    def summary(self, account_id: UUID) -> WalletSummary:
        account = self.get_account(account_id)
        entries = self._entries_for(account_id)

        earned = sum((e["amount"] for e in entries if e["entry_type"] == EntryType.CREDIT), Decimal("0.00"))
        debited = sum((-e["amount"] for e in entries if e["entry_type"] == EntryType.DEBIT), Decimal("0.00"))
        reversed_ = sum((e["amount"] for e in entries if e["entry_type"] == EntryType.REVERSAL), Decimal("0.00"))

        return WalletSummary(
            account_id=account_id,
            currency=account.currency,
            current_balance=account.available_balance,
            held_balance=account.held_balance,
            total_earned=earned,
            total_withdrawn=debited - reversed_,
        )

    def history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.get_account(account_id)
        all_entries = [LedgerEntry(**e) for e in self._entries_for(account_id)]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=account.available_balance,
        )

    @contextmanager
    def _transaction(self, tx: Optional[Transaction]) -> Iterator[Transaction]:
        if tx is not None:
            yield tx
            return
        with self.storage.transaction() as own:
            yield own

    def _locked_account(self, tx: Transaction, account_id: UUID) -> dict:
        try:
            tx.lock("accounts", account_id, timeout=self.settings.transition_timeout_seconds)
        except RowLockedError:
            raise LedgerTimeoutError(
                f"Timed out waiting for account {account_id}; no balance was changed"
            )
        account = tx.get("accounts", account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _held_reservation(self, tx: Transaction, token: ReservationToken) -> dict:
        reservation = tx.get("reservations", token.id)
        if not reservation:
            raise InvalidStateTransitionError(f"Reservation {token.id} does not exist")
        if reservation["status"] != ReservationStatus.HELD:
            raise InvalidStateTransitionError(
                f"Reservation {token.id} is already {reservation['status'].value}"
            )
        return reservation

    def _entry(self, account: dict, entry_type: EntryType, amount: Decimal,
               reference: str, description: str) -> dict:
        return {
            "id": uuid4(),
            "account_id": account["id"],
            "entry_type": entry_type,
            "amount": amount,
            "currency": account["currency"],
            "balance_after": account["available_balance"],
            "reference": reference,
            "description": description,
            "created_at": datetime.now(timezone.utc),
        }

    def _entries_for(self, account_id: UUID) -> list[dict]:
        return [e for e in self.storage.values("ledger_entries") if e["account_id"] == account_id]
