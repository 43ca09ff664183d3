"""
Payout and Settlement Engine

This package provides:
- Wallet ledger with reservations and a non-negative balance floor
- TDS withholding and net amount calculation
- Payout lifecycle: pending → processing → completed / cancelled, or pending → rejected
- Single full or partial refund per payment through a payment gateway
- Settlement batches reconciled as a unit against the bank's confirmation
"""

from .errors import PayoutEngineError
from .models import (
    BankDetails,
    BatchStatus,
    PaymentMethod,
    PayoutRequest,
    PayoutStatus,
    SettlementBatch,
)
from .service import PayoutService

__all__ = [
    "BankDetails",
    "BatchStatus",
    "PaymentMethod",
    "PayoutEngineError",
    "PayoutRequest",
    "PayoutStatus",
    "PayoutService",
    "SettlementBatch",
]
