"""
Payout lifecycle.

    pending ──process──▶ processing ──complete──▶ completed
       │                     │
       └──reject──▶ rejected └──cancel──▶ cancelled

Only ``pending`` and ``processing`` have outgoing edges. The account is
debited exactly once, on the way into ``processing``, and credited back on
the way into ``cancelled``. Every transition takes a non-blocking lock on
the payout row, so a transition attempted while another one is in flight
fails instead of queueing behind it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from .config import Settings, get_settings
from .errors import (
    InsufficientBalanceError,
    InvalidBankDetailsError,
    InvalidStateTransitionError,
    PayoutNotFoundError,
    SettlementIntegrityError,
    ValidationError,
)
from .models import BankDetails, EntryType, PayoutRequest, PayoutStatus
from .storage import InMemoryStorage, RowLockedError, Transaction
from .wallet import WalletLedger

log = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.PROCESSING, PayoutStatus.REJECTED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.CANCELLED}),
}

TIMESTAMP_FIELDS = {
    PayoutStatus.PROCESSING: "processed_at",
    PayoutStatus.COMPLETED: "completed_at",
    PayoutStatus.REJECTED: "rejected_at",
    PayoutStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: PayoutStatus, target: PayoutStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class PayoutStateMachine:
    def __init__(self, storage: InMemoryStorage, wallet: WalletLedger, settings: Optional[Settings] = None):
        self.storage = storage
        self.wallet = wallet
        self.settings = settings or get_settings()

    def process(
        self,
        payout_id: UUID,
        actor: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PayoutRequest:
        """Debit the account and move the payout to processing.

        Repeating a call with the same ``idempotency_key`` returns the
        payout as stored, without a second debit. Without a key a repeated
        call is an illegal transition.
        """
        _require_actor(actor)
        index_key = f"process:{idempotency_key}" if idempotency_key else None
        if index_key:
            seen = self.storage.idempotency_index.get(index_key)
            if seen == payout_id:
                log.info("Payout %s already processed under key %s", payout_id, idempotency_key)
                return self._load(payout_id)
            if seen is not None:
                raise ValidationError(f"Idempotency key {idempotency_key!r} belongs to payout {seen}")

        with self.storage.transaction() as tx:
            payout = self.locked_payout(tx, payout_id)
            self._check(payout, PayoutStatus.PROCESSING)

            problems = BankDetails(**payout["bank_details"]).problems()
            if problems:
                raise InvalidBankDetailsError(
                    f"Payout {payout_id} cannot leave pending with incomplete bank details",
                    missing_fields=problems,
                )

            try:
                self.wallet.debit(
                    payout["account_id"], payout["requested_amount"],
                    reference=_reference(payout_id),
                    description=f"Payout {payout_id}",
                    tx=tx,
                )
            except InsufficientBalanceError:
                log.warning("Payout %s stays pending: balance no longer covers %s",
                            payout_id, payout["requested_amount"])
                raise

            self._move(payout, PayoutStatus.PROCESSING, actor, notes)
            tx.put("payouts", payout_id, payout)
            if index_key:
                tx.put("idempotency_index", index_key, payout_id)

        log.info("Payout %s processing (actor=%s)", payout_id, actor)
        return PayoutRequest(**payout)

    def reject(self, payout_id: UUID, actor: str, reason: str) -> PayoutRequest:
        _require_actor(actor)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with self.storage.transaction() as tx:
            payout = self.locked_payout(tx, payout_id)
            self._check(payout, PayoutStatus.REJECTED)
            self._move(payout, PayoutStatus.REJECTED, actor, reason)
            payout["rejection_reason"] = reason.strip()
            tx.put("payouts", payout_id, payout)

        log.info("Payout %s rejected (actor=%s): %s", payout_id, actor, reason)
        return PayoutRequest(**payout)

    def complete(
        self,
        payout_id: UUID,
        actor: str,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PayoutRequest:
        """Record the transfer as done.

        Completing an already completed payout returns it unchanged.
        """
        _require_actor(actor)
        with self.storage.transaction() as tx:
            payout = self.locked_payout(tx, payout_id)
            if payout["status"] == PayoutStatus.COMPLETED:
                log.info("Payout %s already completed, returning stored record", payout_id)
                return PayoutRequest(**payout)
            self.apply_complete(tx, payout, actor, transaction_id, notes)

        log.info("Payout %s completed (actor=%s, transaction=%s)", payout_id, actor, transaction_id)
        return PayoutRequest(**payout)

    def cancel(self, payout_id: UUID, actor: str, reason: str) -> PayoutRequest:
        _require_actor(actor)
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        with self.storage.transaction() as tx:
            payout = self.locked_payout(tx, payout_id)
            self.apply_cancel(tx, payout, actor, reason)

        log.info("Payout %s cancelled (actor=%s): %s", payout_id, actor, reason)
        return PayoutRequest(**payout)

    def apply_complete(
        self, tx: Transaction, payout: dict, actor: str,
        transaction_id: Optional[str] = None, notes: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        """Complete a payout row already locked by ``tx``."""
        self._check(payout, PayoutStatus.COMPLETED)
        self._move(payout, PayoutStatus.COMPLETED, actor, notes, completed_at)
        if transaction_id:
            payout["transaction_id"] = transaction_id
        if notes:
            payout["notes"] = notes
        tx.put("payouts", payout["id"], payout)

    def apply_cancel(self, tx: Transaction, payout: dict, actor: str, reason: str) -> None:
        """Cancel a payout row already locked by ``tx`` and refund its debit."""
        self._check(payout, PayoutStatus.CANCELLED)
        self.wallet.credit(
            payout["account_id"], payout["requested_amount"],
            reference=_reference(payout["id"]),
            description=f"Reversal of payout {payout['id']}: {reason}",
            entry_type=EntryType.REVERSAL,
            tx=tx,
        )
        self._move(payout, PayoutStatus.CANCELLED, actor, reason)
        payout["cancellation_reason"] = reason
        tx.put("payouts", payout["id"], payout)

    def _load(self, payout_id: UUID) -> PayoutRequest:
        payout_data = self.storage.get("payouts", payout_id)
        if not payout_data:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return PayoutRequest(**payout_data)

    def locked_payout(self, tx: Transaction, payout_id: UUID) -> dict:
        try:
            tx.lock("payouts", payout_id)
        except RowLockedError:
            log.warning("Rejected concurrent transition on payout %s", payout_id)
            raise InvalidStateTransitionError(
                f"Payout {payout_id} has another transition in flight; refresh and retry"
            )
        payout = tx.get("payouts", payout_id)
        if not payout:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return payout

    def _check(self, payout: dict, target: PayoutStatus) -> None:
        current = payout["status"]
        if not can_transition(current, target):
            log.warning("Illegal transition on payout %s: %s -> %s",
                        payout["id"], current.value, target.value)
            raise InvalidStateTransitionError(
                f"Cannot move payout {payout['id']} from {current.value} to {target.value}"
            )
        if payout["tds_amount"] + payout["net_amount"] != payout["requested_amount"]:
            log.critical("Payout %s amounts do not reconcile", payout["id"])
            raise SettlementIntegrityError(
                f"Payout {payout['id']}: tds {payout['tds_amount']} + net {payout['net_amount']} "
                f"!= requested {payout['requested_amount']}"
            )

    def _move(
        self, payout: dict, target: PayoutStatus, actor: str,
        notes: Optional[str] = None, at: Optional[datetime] = None,
    ) -> None:
        now = at or datetime.now(timezone.utc)
        payout["status"] = target
        payout[TIMESTAMP_FIELDS[target]] = now
        payout["status_history"].append({"status": target, "actor": actor, "at": now, "notes": notes})
        payout["version"] += 1


def _reference(payout_id: UUID) -> str:
    return f"payout:{payout_id}"


def _require_actor(actor: str) -> None:
    if not actor or not actor.strip():
        raise ValidationError("An actor is required for every payout transition")
