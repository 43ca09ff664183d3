import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict

IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^\d{9,18}$")


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    REVERSAL = "REVERSAL"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    PROCESSED = "processed"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class ListPeriod(str, Enum):
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"
    LAST_YEAR = "last_year"
    ALL_TIME = "all_time"


class BankDetails(BaseModel):
    bank_name: str = ""
    account_number: str = ""
    ifsc_code: str = ""
    account_holder_name: str = ""

    model_config = ConfigDict(frozen=True)

    def problems(self) -> list[str]:
        """Fields that keep these details from being usable for a transfer."""
        problems = [
            name for name in ("bank_name", "account_number", "ifsc_code", "account_holder_name")
            if not getattr(self, name).strip()
        ]
        if "account_number" not in problems and not ACCOUNT_NUMBER_PATTERN.match(self.account_number.strip()):
            problems.append("account_number")
        if "ifsc_code" not in problems and not IFSC_PATTERN.match(self.ifsc_code.strip().upper()):
            problems.append("ifsc_code")
        return problems

    def is_complete(self) -> bool:
        return not self.problems()


class Account(BaseModel):
    id: UUID
    available_balance: Decimal
    held_balance: Decimal = Decimal("0.00")
    currency: str = "INR"
    version: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationToken(BaseModel):
    id: UUID
    account_id: UUID
    amount: Decimal
    reference: str
    status: ReservationStatus
    created_at: datetime


class LedgerEntry(BaseModel):
    id: UUID
    account_id: UUID
    entry_type: EntryType
    amount: Decimal
    currency: str = "INR"
    balance_after: Decimal
    reference: str
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WalletSummary(BaseModel):
    account_id: UUID
    currency: str
    current_balance: Decimal
    held_balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class StatusChange(BaseModel):
    status: PayoutStatus
    actor: str
    at: datetime
    notes: Optional[str] = None


class PayoutRequest(BaseModel):
    id: UUID
    account_id: UUID
    requested_amount: Decimal
    tds_amount: Decimal
    net_amount: Decimal
    currency: str = "INR"
    bank_details: BankDetails
    status: PayoutStatus
    created_at: datetime
    created_by: str
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    settlement_batch_id: Optional[UUID] = None
    status_history: list[StatusChange] = Field(default_factory=list)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status not in (PayoutStatus.PENDING, PayoutStatus.PROCESSING)


class Payment(BaseModel):
    id: UUID
    booking_reference: str
    amount: Decimal
    currency: str = "INR"
    method: PaymentMethod
    status: PaymentStatus
    gateway_transaction_id: Optional[str] = None
    notes: Optional[str] = None
    refund_id: Optional[UUID] = None
    # Set while a timed-out gateway refund may or may not have landed
    in_doubt_refund_amount: Optional[Decimal] = None
    created_at: datetime
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class RefundRecord(BaseModel):
    id: UUID
    payment_id: UUID
    refund_amount: Decimal
    is_full: bool
    gateway_refund_id: str
    status: RefundStatus
    created_at: datetime
    created_by: str

    model_config = ConfigDict(from_attributes=True)


class RefundDetails(BaseModel):
    refund_id: UUID
    gateway_refund_id: str
    refund_amount: Decimal
    original_amount: Decimal
    balance_amount: Decimal
    is_full: bool


class SettlementBatch(BaseModel):
    id: UUID
    batch_number: str
    settlement_date: date
    payout_ids: list[UUID]
    total_amount: Decimal
    status: BatchStatus
    bank_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    initiated_by: str
    initiated_at: datetime
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def total_payouts(self) -> int:
        return len(self.payout_ids)


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    count: int
    page: int
    page_size: int
    total_pages: int
    next: Optional[int] = None
    previous: Optional[int] = None
    results: list[T]


# Request bodies

class OpenAccountRequest(BaseModel):
    opening_balance: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str = Field(default="INR")


class CreatePayoutRequest(BaseModel):
    account_id: UUID
    requested_amount: Decimal
    bank_details: BankDetails
    actor: str = Field(..., min_length=1, description="Operator creating the request")
    notes: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "account_id": "550e8400-e29b-41d4-a716-446655440000",
            "requested_amount": 3000.00,
            "bank_details": {
                "bank_name": "State Bank of India",
                "account_number": "12345678901",
                "ifsc_code": "SBIN0001234",
                "account_holder_name": "John Referrer",
            },
            "actor": "admin@example.com",
        }
    })


class ProcessPayoutRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(
        default=None, description="Repeat the same key to safely retry a process call"
    )


class CompletePayoutRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class RejectPayoutRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., description="Reason shown to the payee")


class RecordPaymentRequest(BaseModel):
    booking_reference: str = Field(..., min_length=1)
    amount: Decimal
    method: PaymentMethod
    gateway_transaction_id: Optional[str] = None
    notes: Optional[str] = None
    actor: str = Field(..., min_length=1)


class CreateRefundRequest(BaseModel):
    payment_id: UUID
    amount: Optional[Decimal] = Field(default=None, description="Omit for a full refund")
    actor: str = Field(..., min_length=1)


class ResolveRefundRequest(BaseModel):
    actor: str = Field(..., min_length=1)
    gateway_refund_id: Optional[str] = Field(
        default=None, description="Gateway refund id if the refund landed; omit if it did not"
    )


class CreateBatchRequest(BaseModel):
    payout_ids: list[UUID]
    settlement_date: date
    actor: str = Field(..., min_length=1)


class SubmitBatchRequest(BaseModel):
    actor: str = Field(..., min_length=1)


class CompleteBatchRequest(BaseModel):
    bank_reference: str
    actor: str = Field(..., min_length=1)


class FailBatchRequest(BaseModel):
    reason: str
    actor: str = Field(..., min_length=1)
