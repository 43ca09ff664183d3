"""
Unit Tests for the payout state machine

Tests cover:
1. pending → processing → completed, with a single debit
2. Rejection and cancellation
3. Illegal and repeated transitions
4. Idempotent process / complete
5. Concurrent process calls on one payout
"""

import threading

import pytest
from decimal import Decimal
from uuid import uuid4

from payouts.errors import (
    InsufficientBalanceError,
    InvalidBankDetailsError,
    InvalidStateTransitionError,
    PayoutNotFoundError,
    ValidationError,
)
from payouts.models import EntryType, PayoutStatus
from payouts.state_machine import ALLOWED_TRANSITIONS, can_transition


ADMIN = "admin@example.com"
OTHER_ADMIN = "ops@example.com"

LEGAL_SEQUENCES = [
    [PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED],
    [PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.CANCELLED],
    [PayoutStatus.PENDING, PayoutStatus.REJECTED],
]


def _is_legal_prefix(statuses):
    return any(seq[:len(statuses)] == statuses for seq in LEGAL_SEQUENCES)


def _debits(service, account_id):
    return [
        e for e in service.ledger_history(account_id, limit=100).entries
        if e.entry_type == EntryType.DEBIT
    ]


class TestTransitionTable:
    """Tests for the transition table itself."""

    def test_only_pending_and_processing_have_exits(self):
        """Test terminal states have no outgoing transitions."""
        assert set(ALLOWED_TRANSITIONS) == {PayoutStatus.PENDING, PayoutStatus.PROCESSING}

    def test_no_transition_goes_backwards(self):
        """Test nothing returns to pending."""
        for current in PayoutStatus:
            assert not can_transition(current, PayoutStatus.PENDING)
        assert not can_transition(PayoutStatus.PROCESSING, PayoutStatus.REJECTED)
        assert not can_transition(PayoutStatus.PENDING, PayoutStatus.COMPLETED)


class TestHappyPath:
    """Tests for the standard payout lifecycle."""

    def test_process_and_complete(self, service, account, bank_details):
        """Test create → process → complete with the balance debited at process time."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        processed = service.process_payout(payout.id, ADMIN, notes="Approved")

        assert processed.status == PayoutStatus.PROCESSING
        assert processed.processed_at is not None
        assert service.get_account(account.id).available_balance == Decimal("7000.00")

        completed = service.complete_payout(payout.id, OTHER_ADMIN, transaction_id="UTR123456")

        assert completed.status == PayoutStatus.COMPLETED
        assert completed.transaction_id == "UTR123456"
        assert completed.completed_at is not None
        assert completed.tds_amount + completed.net_amount == completed.requested_amount
        assert service.get_account(account.id).available_balance == Decimal("7000.00")

        # Actors recorded per transition
        history = [(c.status, c.actor) for c in completed.status_history]
        assert history == [
            (PayoutStatus.PENDING, ADMIN),
            (PayoutStatus.PROCESSING, ADMIN),
            (PayoutStatus.COMPLETED, OTHER_ADMIN),
        ]

    def test_process_debits_exactly_once(self, service, account, bank_details):
        """Test one debit entry of the requested amount."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        service.process_payout(payout.id, ADMIN)

        debits = _debits(service, account.id)
        assert len(debits) == 1
        assert debits[0].amount == Decimal("-3000.00")
        assert debits[0].reference == f"payout:{payout.id}"


class TestRejectAndCancel:
    """Tests for rejection and cancellation."""

    def test_reject_pending(self, service, account, bank_details):
        """Test rejection records the reason and leaves the balance alone."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        rejected = service.reject_payout(payout.id, ADMIN, "  Bank account closed  ")

        assert rejected.status == PayoutStatus.REJECTED
        assert rejected.rejection_reason == "Bank account closed"
        assert rejected.rejected_at is not None
        assert service.get_account(account.id).available_balance == Decimal("10000.00")

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reject_requires_reason(self, service, account, bank_details, reason):
        """Test a blank reason is refused and the payout stays pending."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        with pytest.raises(ValidationError):
            service.reject_payout(payout.id, ADMIN, reason)

        assert service.get_payout(payout.id).status == PayoutStatus.PENDING

    def test_cannot_reject_processing(self, service, account, bank_details):
        """Test a debited payout can no longer be rejected."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.process_payout(payout.id, ADMIN)

        with pytest.raises(InvalidStateTransitionError):
            service.reject_payout(payout.id, ADMIN, "Too late")

    def test_cancel_credits_back(self, service, account, bank_details):
        """Test cancelling a processing payout restores the balance."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.process_payout(payout.id, ADMIN)

        cancelled = service.state_machine.cancel(payout.id, ADMIN, "Bank returned transfer")

        assert cancelled.status == PayoutStatus.CANCELLED
        assert cancelled.cancellation_reason == "Bank returned transfer"
        assert service.get_account(account.id).available_balance == Decimal("10000.00")

        reversals = [
            e for e in service.ledger_history(account.id).entries
            if e.entry_type == EntryType.REVERSAL
        ]
        assert len(reversals) == 1
        assert reversals[0].amount == Decimal("3000.00")

    def test_cannot_cancel_pending(self, service, account, bank_details):
        """Test pending payouts are rejected, not cancelled."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        with pytest.raises(InvalidStateTransitionError):
            service.state_machine.cancel(payout.id, ADMIN, "Changed mind")

        assert service.get_account(account.id).available_balance == Decimal("10000.00")


class TestIllegalTransitions:
    """Tests for repeated and out-of-order calls."""

    def test_double_process_fails(self, service, account, bank_details):
        """Test a second process call is reported, not ignored, and never debits twice."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.process_payout(payout.id, ADMIN)

        with pytest.raises(InvalidStateTransitionError):
            service.process_payout(payout.id, ADMIN)

        assert service.get_account(account.id).available_balance == Decimal("7000.00")
        assert len(_debits(service, account.id)) == 1

    def test_complete_pending_fails(self, service, account, bank_details):
        """Test a payout must be processed before it can complete."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        with pytest.raises(InvalidStateTransitionError):
            service.complete_payout(payout.id, ADMIN)

    def test_process_rejected_fails(self, service, account, bank_details):
        """Test terminal payouts cannot be resurrected."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.reject_payout(payout.id, ADMIN, "Fraud check failed")

        with pytest.raises(InvalidStateTransitionError):
            service.process_payout(payout.id, ADMIN)
        with pytest.raises(InvalidStateTransitionError):
            service.complete_payout(payout.id, ADMIN)

    def test_unknown_payout(self, service):
        """Test transitions on a missing payout fail."""
        with pytest.raises(PayoutNotFoundError):
            service.process_payout(uuid4(), ADMIN)

    def test_actor_required(self, service, account, bank_details):
        """Test every transition names its operator."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        with pytest.raises(ValidationError):
            service.process_payout(payout.id, "")

    def test_status_sequences_stay_legal(self, service, account, bank_details):
        """Test every recorded history is a prefix of a legal sequence."""
        a = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)
        b = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)
        c = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)
        d = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)

        service.process_payout(a.id, ADMIN)
        service.complete_payout(a.id, ADMIN)
        service.process_payout(b.id, ADMIN)
        service.state_machine.cancel(b.id, ADMIN, "Returned")
        service.reject_payout(c.id, ADMIN, "Duplicate")

        # Illegal attempts must not leave a trace in the history
        for attempt in (
            lambda: service.process_payout(a.id, ADMIN),
            lambda: service.reject_payout(b.id, ADMIN, "x"),
            lambda: service.complete_payout(c.id, ADMIN),
            lambda: service.complete_payout(d.id, ADMIN),
        ):
            with pytest.raises(InvalidStateTransitionError):
                attempt()

        for payout in service.list_payouts().results:
            statuses = [change.status for change in payout.status_history]
            assert _is_legal_prefix(statuses)
            assert statuses[-1] == payout.status


class TestLateReservation:
    """Tests for funds being reserved at process time."""

    def test_second_process_fails_when_funds_consumed(self, service, account, bank_details):
        """Test the over-subscribed request stays pending with a surfaced error."""
        first = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        second = service.create_payout(account.id, Decimal("8000"), bank_details, ADMIN)

        service.process_payout(first.id, ADMIN)

        with pytest.raises(InsufficientBalanceError):
            service.process_payout(second.id, ADMIN)

        assert service.get_payout(second.id).status == PayoutStatus.PENDING
        assert service.get_account(account.id).available_balance == Decimal("7000.00")

    def test_incomplete_bank_details_block_processing(self, service, account, bank_details):
        """Test a payout never leaves pending without usable bank details."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.storage.payouts[payout.id]["bank_details"]["ifsc_code"] = ""

        with pytest.raises(InvalidBankDetailsError):
            service.process_payout(payout.id, ADMIN)

        assert service.get_payout(payout.id).status == PayoutStatus.PENDING
        assert service.get_account(account.id).available_balance == Decimal("10000.00")


class TestIdempotency:
    """Tests for safe repeats."""

    def test_process_with_same_key_returns_stored_payout(self, service, account, bank_details):
        """Test a retried process call with its key does not debit again."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)

        first = service.process_payout(payout.id, ADMIN, idempotency_key="proc-001")
        second = service.process_payout(payout.id, ADMIN, idempotency_key="proc-001")

        assert second == first
        assert service.get_account(account.id).available_balance == Decimal("7000.00")
        assert len(_debits(service, account.id)) == 1

    def test_key_reused_for_other_payout(self, service, account, bank_details):
        """Test an idempotency key is bound to one payout."""
        a = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)
        b = service.create_payout(account.id, Decimal("1000"), bank_details, ADMIN)
        service.process_payout(a.id, ADMIN, idempotency_key="proc-002")

        with pytest.raises(ValidationError):
            service.process_payout(b.id, ADMIN, idempotency_key="proc-002")

        assert service.get_payout(b.id).status == PayoutStatus.PENDING

    def test_failed_process_does_not_bind_key(self, service, account, bank_details):
        """Test a key is only recorded when the debit succeeded."""
        payout = service.create_payout(account.id, Decimal("8000"), bank_details, ADMIN)
        service.wallet.debit(account.id, Decimal("5000.00"), reference="manual")

        with pytest.raises(InsufficientBalanceError):
            service.process_payout(payout.id, ADMIN, idempotency_key="proc-003")

        assert "process:proc-003" not in service.storage.idempotency_index

    def test_repeated_complete_returns_identical_record(self, service, account, bank_details):
        """Test completing twice returns the stored record with completed_at unchanged."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        service.process_payout(payout.id, ADMIN)

        first = service.complete_payout(payout.id, ADMIN, transaction_id="UTR1")
        second = service.complete_payout(payout.id, OTHER_ADMIN, transaction_id="UTR2")

        assert second == first
        assert second.completed_at == first.completed_at
        assert service.get_payout(payout.id).transaction_id == "UTR1"


class TestConcurrency:
    """Tests for racing operators."""

    def test_concurrent_process_debits_once(self, service, account, bank_details):
        """Test two simultaneous process calls give one debit and one conflict."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        barrier = threading.Barrier(2)
        outcomes = []

        def worker(actor):
            barrier.wait()
            try:
                service.process_payout(payout.id, actor)
                outcomes.append("ok")
            except InvalidStateTransitionError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=worker, args=(actor,)) for actor in (ADMIN, OTHER_ADMIN)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(outcomes) == ["conflict", "ok"]
        assert service.get_account(account.id).available_balance == Decimal("7000.00")
        assert len(_debits(service, account.id)) == 1
        assert service.get_payout(payout.id).status == PayoutStatus.PROCESSING

    def test_transition_in_flight_is_reported(self, service, account, bank_details):
        """Test a call on a payout locked by another operation fails immediately."""
        payout = service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
        row_lock = service.storage.row_lock("payouts", payout.id)
        row_lock.acquire()
        try:
            with pytest.raises(InvalidStateTransitionError):
                service.process_payout(payout.id, ADMIN)
        finally:
            row_lock.release()

        assert service.get_payout(payout.id).status == PayoutStatus.PENDING
        assert service.get_account(account.id).available_balance == Decimal("10000.00")

    def test_parallel_payouts_never_overdraw(self, service, account, bank_details):
        """Test concurrent processing of different payouts respects the balance floor."""
        payouts = [
            service.create_payout(account.id, Decimal("3000"), bank_details, ADMIN)
            for _ in range(5)
        ]
        barrier = threading.Barrier(len(payouts))
        outcomes = []

        def worker(payout_id):
            barrier.wait()
            try:
                service.process_payout(payout_id, ADMIN)
                outcomes.append("ok")
            except InsufficientBalanceError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=worker, args=(p.id,)) for p in payouts]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert outcomes.count("ok") == 3
        assert outcomes.count("insufficient") == 2
        assert service.get_account(account.id).available_balance == Decimal("1000.00")
