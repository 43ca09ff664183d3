"""
Unit Tests for the Wallet Ledger

Tests cover:
1. Reserve / commit / release
2. Non-negative balance floor
3. Compensating credits
4. Rollback of an aborted transaction
5. Lock timeouts
6. Summary and history
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from payouts.config import Settings
from payouts.errors import (
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateTransitionError,
    LedgerTimeoutError,
)
from payouts.models import EntryType, ReservationStatus
from payouts.storage import InMemoryStorage
from payouts.wallet import WalletLedger


@pytest.fixture
def wallet(settings):
    return WalletLedger(InMemoryStorage(), settings)


class TestReservations:
    """Tests for the reserve/commit/release flow."""

    def test_reserve_moves_funds_to_held(self, wallet):
        """Test a reservation takes funds out of the available balance."""
        account = wallet.open_account(Decimal("1000.00"))

        token = wallet.reserve(account.id, Decimal("400.00"), reference="payout:1")

        after = wallet.get_account(account.id)
        assert token.status == ReservationStatus.HELD
        assert after.available_balance == Decimal("600.00")
        assert after.held_balance == Decimal("400.00")

    def test_commit_debits_once(self, wallet):
        """Test commit writes a single debit entry and clears the hold."""
        account = wallet.open_account(Decimal("1000.00"))
        token = wallet.reserve(account.id, Decimal("400.00"), reference="payout:1")

        entry = wallet.commit(token)

        after = wallet.get_account(account.id)
        assert entry.entry_type == EntryType.DEBIT
        assert entry.amount == Decimal("-400.00")
        assert entry.balance_after == Decimal("600.00")
        assert after.available_balance == Decimal("600.00")
        assert after.held_balance == Decimal("0.00")

        # A token can only be committed once
        with pytest.raises(InvalidStateTransitionError):
            wallet.commit(token)

    def test_release_restores_available_balance(self, wallet):
        """Test release undoes a reservation without a ledger entry."""
        account = wallet.open_account(Decimal("1000.00"))
        token = wallet.reserve(account.id, Decimal("400.00"), reference="payout:1")

        released = wallet.release(token)

        after = wallet.get_account(account.id)
        assert released.status == ReservationStatus.RELEASED
        assert after.available_balance == Decimal("1000.00")
        assert after.held_balance == Decimal("0.00")
        assert wallet.history(account.id).total_count == 1  # opening credit only

        with pytest.raises(InvalidStateTransitionError):
            wallet.commit(token)

    def test_reserve_beyond_balance_fails(self, wallet):
        """Test the balance never goes below zero."""
        account = wallet.open_account(Decimal("100.00"))

        with pytest.raises(InsufficientBalanceError):
            wallet.reserve(account.id, Decimal("100.01"), reference="payout:1")

        assert wallet.get_account(account.id).available_balance == Decimal("100.00")

    def test_held_funds_are_not_available_twice(self, wallet):
        """Test two reservations cannot together exceed the balance."""
        account = wallet.open_account(Decimal("100.00"))
        wallet.reserve(account.id, Decimal("70.00"), reference="payout:1")

        with pytest.raises(InsufficientBalanceError):
            wallet.reserve(account.id, Decimal("40.00"), reference="payout:2")

    def test_non_positive_amounts_rejected(self, wallet):
        """Test zero and negative movements are refused."""
        account = wallet.open_account(Decimal("100.00"))

        with pytest.raises(InvalidAmountError):
            wallet.reserve(account.id, Decimal("0"), reference="x")
        with pytest.raises(InvalidAmountError):
            wallet.credit(account.id, Decimal("-1"), reference="x")

    def test_unknown_account(self, wallet):
        """Test operations on a missing account fail."""
        with pytest.raises(AccountNotFoundError):
            wallet.reserve(uuid4(), Decimal("1.00"), reference="x")


class TestTransactions:
    """Tests for atomicity and locking."""

    def test_aborted_transaction_leaves_balance_untouched(self, wallet):
        """Test staged debits are discarded when the transaction fails."""
        account = wallet.open_account(Decimal("500.00"))

        with pytest.raises(RuntimeError):
            with wallet.storage.transaction() as tx:
                wallet.debit(account.id, Decimal("200.00"), reference="payout:1", tx=tx)
                raise RuntimeError("persistence failed")

        after = wallet.get_account(account.id)
        assert after.available_balance == Decimal("500.00")
        assert after.version == account.version

    def test_locked_account_times_out(self):
        """Test a debit waits a bounded time for a busy account."""
        wallet = WalletLedger(InMemoryStorage(), Settings(transition_timeout_seconds=0.05))
        account = wallet.open_account(Decimal("500.00"))

        row_lock = wallet.storage.row_lock("accounts", account.id)
        row_lock.acquire()
        try:
            with pytest.raises(LedgerTimeoutError) as exc_info:
                wallet.debit(account.id, Decimal("100.00"), reference="payout:1")
        finally:
            row_lock.release()

        assert exc_info.value.retryable is True
        assert wallet.get_account(account.id).available_balance == Decimal("500.00")

    def test_row_keeps_one_lock_after_release(self, wallet):
        """Test a released row lock is reused, never replaced by a fresh one."""
        account = wallet.open_account(Decimal("500.00"))
        before = wallet.storage.row_lock("accounts", account.id)

        wallet.debit(account.id, Decimal("100.00"), reference="payout:1")

        after = wallet.storage.row_lock("accounts", account.id)
        assert after is before
        assert not after.locked()

    def test_transaction_stages_non_dict_values(self, wallet):
        """Test index entries such as ids commit alongside rows."""
        key, payout_id = "process:key-1", uuid4()

        with wallet.storage.transaction() as tx:
            tx.put("idempotency_index", key, payout_id)
            assert tx.get("idempotency_index", key) == payout_id

        assert wallet.storage.idempotency_index[key] == payout_id


class TestSummaryAndHistory:
    """Tests for wallet summary and ledger history."""

    def test_summary_totals(self, wallet):
        """Test earned and withdrawn totals net out reversals."""
        account = wallet.open_account(Decimal("1000.00"))
        wallet.credit(account.id, Decimal("250.00"), reference="commission:1")
        wallet.debit(account.id, Decimal("400.00"), reference="payout:1")
        wallet.debit(account.id, Decimal("100.00"), reference="payout:2")
        wallet.credit(account.id, Decimal("100.00"), reference="payout:2", entry_type=EntryType.REVERSAL)

        summary = wallet.summary(account.id)

        assert summary.total_earned == Decimal("1250.00")
        assert summary.total_withdrawn == Decimal("400.00")
        assert summary.current_balance == Decimal("850.00")

    def test_history_newest_first(self, wallet):
        """Test ledger history pagination."""
        account = wallet.open_account(Decimal("1000.00"))
        wallet.debit(account.id, Decimal("100.00"), reference="payout:1")
        wallet.debit(account.id, Decimal("50.00"), reference="payout:2")

        history = wallet.history(account.id, limit=2)

        assert history.total_count == 3
        assert len(history.entries) == 2
        assert history.entries[0].created_at >= history.entries[1].created_at
        assert history.current_balance == Decimal("850.00")
