"""
Settlement batches.

A batch groups payouts that are already ``processing`` (debited, waiting
for the bank transfer). The bank confirms or rejects the whole file, so a
batch is reconciled as a unit: every member completes, or every member is
cancelled and credited back. A failed batch stays failed; its payouts are
re-requested and land in a new batch.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import (
    BatchNotFoundError,
    InvalidStateTransitionError,
    SettlementIntegrityError,
    ValidationError,
)
from .models import BatchStatus, PayoutStatus, SettlementBatch
from .state_machine import PayoutStateMachine
from .storage import InMemoryStorage, RowLockedError, Transaction

log = logging.getLogger(__name__)

OPEN_BATCH_STATUSES = (BatchStatus.PENDING, BatchStatus.PROCESSING)


class SettlementReconciler:
    def __init__(
        self,
        storage: InMemoryStorage,
        state_machine: PayoutStateMachine,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.settings = settings or get_settings()

    def create_batch(self, payout_ids: list[UUID], settlement_date: date, actor: str) -> SettlementBatch:
        _require(actor, "An actor is required to create a settlement batch")
        if not payout_ids:
            raise ValidationError("A settlement batch needs at least one payout")
        if len(set(payout_ids)) != len(payout_ids):
            raise ValidationError("A payout can appear only once in a settlement batch")

        batch_id = uuid4()
        with self.storage.transaction() as tx:
            payouts = self._locked_payouts(tx, payout_ids)
            for payout in payouts:
                if payout["status"] != PayoutStatus.PROCESSING:
                    raise InvalidStateTransitionError(
                        f"Payout {payout['id']} is {payout['status'].value}; only processing payouts can be batched"
                    )
                if payout["settlement_batch_id"] is not None:
                    raise InvalidStateTransitionError(
                        f"Payout {payout['id']} already belongs to batch {payout['settlement_batch_id']}"
                    )

            seq = self.storage.next_batch_sequence(settlement_date.year)
            batch_data = {
                "id": batch_id,
                "batch_number": f"{self.settings.batch_number_prefix}-{settlement_date.year}-{seq:03d}",
                "settlement_date": settlement_date,
                "payout_ids": list(payout_ids),
                "total_amount": sum((p["net_amount"] for p in payouts), Decimal("0.00")),
                "status": BatchStatus.PENDING,
                "bank_reference": None,
                "failure_reason": None,
                "initiated_by": actor,
                "initiated_at": datetime.now(timezone.utc),
            }
            for payout in payouts:
                payout["settlement_batch_id"] = batch_id
                payout["version"] += 1
                tx.put("payouts", payout["id"], payout)
            tx.put("batches", batch_id, batch_data)

        log.info("Created settlement batch %s with %d payouts totalling %s",
                 batch_data["batch_number"], len(payout_ids), batch_data["total_amount"])
        return SettlementBatch(**batch_data)

    def submit_batch(self, batch_id: UUID, actor: str) -> SettlementBatch:
        """Mark the batch file as handed to the bank."""
        _require(actor, "An actor is required to submit a settlement batch")
        with self.storage.transaction() as tx:
            batch = self._locked_batch(tx, batch_id)
            if batch["status"] != BatchStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Batch {batch['batch_number']} is {batch['status'].value}; only pending batches can be submitted"
                )
            batch["status"] = BatchStatus.PROCESSING
            batch["submitted_at"] = datetime.now(timezone.utc)
            tx.put("batches", batch_id, batch)

        log.info("Submitted settlement batch %s (actor=%s)", batch["batch_number"], actor)
        return SettlementBatch(**batch)

    def mark_batch_completed(self, batch_id: UUID, bank_reference: str, actor: str) -> SettlementBatch:
        _require(actor, "An actor is required to complete a settlement batch")
        _require(bank_reference, "A bank reference is required to complete a settlement batch")

        with self.storage.transaction() as tx:
            batch = self._locked_open_batch(tx, batch_id)
            payouts = self._locked_members(tx, batch)

            recomputed = sum((p["net_amount"] for p in payouts), Decimal("0.00"))
            drifted = [p["id"] for p in payouts
                       if p["tds_amount"] + p["net_amount"] != p["requested_amount"]]
            if recomputed != batch["total_amount"] or drifted:
                self._integrity_failure(batch, recomputed, drifted)

            now = datetime.now(timezone.utc)
            for payout in payouts:
                self.state_machine.apply_complete(
                    tx, payout, actor,
                    transaction_id=bank_reference,
                    notes=f"Settled in batch {batch['batch_number']}",
                    completed_at=now,
                )
            batch["status"] = BatchStatus.COMPLETED
            batch["bank_reference"] = bank_reference
            batch["total_amount"] = recomputed
            batch["completed_at"] = now
            tx.put("batches", batch_id, batch)

        log.info("Settlement batch %s completed with bank reference %s (actor=%s)",
                 batch["batch_number"], bank_reference, actor)
        return SettlementBatch(**batch)

    def mark_batch_failed(self, batch_id: UUID, reason: str, actor: str) -> SettlementBatch:
        """Fail the batch, cancel every member payout and credit its debit back."""
        _require(actor, "An actor is required to fail a settlement batch")
        _require(reason, "A failure reason is required")

        with self.storage.transaction() as tx:
            batch = self._locked_open_batch(tx, batch_id)
            payouts = self._locked_members(tx, batch)

            for payout in payouts:
                self.state_machine.apply_cancel(
                    tx, payout, actor, f"Settlement batch {batch['batch_number']} failed: {reason}"
                )
            batch["status"] = BatchStatus.FAILED
            batch["failure_reason"] = reason
            batch["failed_at"] = datetime.now(timezone.utc)
            tx.put("batches", batch_id, batch)

        log.warning("Settlement batch %s failed (actor=%s): %s; %d payouts cancelled",
                    batch["batch_number"], actor, reason, len(payouts))
        return SettlementBatch(**batch)

    def get_batch(self, batch_id: UUID) -> SettlementBatch:
        batch_data = self.storage.get("batches", batch_id)
        if not batch_data:
            raise BatchNotFoundError(f"Settlement batch {batch_id} not found")
        return SettlementBatch(**batch_data)

    def list_batches(self, status: Optional[BatchStatus] = None) -> list[SettlementBatch]:
        batches = [
            SettlementBatch(**b) for b in self.storage.values("batches")
            if status is None or b["status"] == status
        ]
        batches.sort(key=lambda b: b.initiated_at, reverse=True)
        return batches

    def _locked_batch(self, tx: Transaction, batch_id: UUID) -> dict:
        try:
            tx.lock("batches", batch_id)
        except RowLockedError:
            raise InvalidStateTransitionError(f"Settlement batch {batch_id} is being reconciled by another operation")
        batch = tx.get("batches", batch_id)
        if not batch:
            raise BatchNotFoundError(f"Settlement batch {batch_id} not found")
        return batch

    def _locked_open_batch(self, tx: Transaction, batch_id: UUID) -> dict:
        batch = self._locked_batch(tx, batch_id)
        if batch["status"] not in OPEN_BATCH_STATUSES:
            raise InvalidStateTransitionError(
                f"Batch {batch['batch_number']} is already {batch['status'].value}"
            )
        return batch

    def _locked_payouts(self, tx: Transaction, payout_ids: list[UUID]) -> list[dict]:
        # Fixed lock order across batches sharing payouts
        return [self.state_machine.locked_payout(tx, pid) for pid in sorted(payout_ids, key=str)]

    def _locked_members(self, tx: Transaction, batch: dict) -> list[dict]:
        payouts = self._locked_payouts(tx, batch["payout_ids"])
        stray = [p["id"] for p in payouts if p["status"] != PayoutStatus.PROCESSING]
        if stray:
            raise InvalidStateTransitionError(
                f"Batch {batch['batch_number']} has payouts outside processing: "
                f"{', '.join(str(pid) for pid in stray)}"
            )
        return payouts

    def _integrity_failure(self, batch: dict, recomputed: Decimal, drifted: list[UUID]) -> None:
        log.critical(
            "Settlement batch %s does not reconcile: stored total %s, recomputed %s, drifted payouts %s",
            batch["batch_number"], batch["total_amount"], recomputed, drifted,
        )
        self.storage.record_reconciliation_event(
            "settlement_total_mismatch",
            batch_id=batch["id"],
            batch_number=batch["batch_number"],
            stored_total=batch["total_amount"],
            recomputed_total=recomputed,
            drifted_payouts=drifted,
        )
        raise SettlementIntegrityError(
            f"Batch {batch['batch_number']} total {batch['total_amount']} does not match "
            f"member net amounts {recomputed}; manual audit required"
        )


def _require(value: Optional[str], message: str) -> None:
    if not value or not value.strip():
        raise ValidationError(message)
