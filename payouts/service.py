from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .config import Settings, get_settings
from .gateway import Gateway, SandboxGateway
from .models import (
    Account,
    BankDetails,
    BatchStatus,
    LedgerHistoryResponse,
    ListPeriod,
    Page,
    Payment,
    PaymentMethod,
    PayoutRequest,
    PayoutStatus,
    RefundDetails,
    RefundRecord,
    SettlementBatch,
    WalletSummary,
)
from .payout_requests import ComplianceCheck, PayoutRequestManager
from .refunds import RefundManager
from .settlement import SettlementReconciler
from .state_machine import PayoutStateMachine
from .storage import InMemoryStorage
from .wallet import WalletLedger


class PayoutService:
    """Entry point for every payout, refund and settlement operation.

    Wires the wallet ledger, request manager, state machine, refund manager
    and settlement reconciler over one storage. Every mutating call takes
    the acting operator explicitly.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        gateway: Optional[Gateway] = None,
        settings: Optional[Settings] = None,
        compliance: Optional[ComplianceCheck] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()
        self.wallet = WalletLedger(self.storage, self.settings)
        self.requests = PayoutRequestManager(self.storage, self.wallet, self.settings, compliance)
        self.state_machine = PayoutStateMachine(self.storage, self.wallet, self.settings)
        self.refunds = RefundManager(self.storage, gateway or SandboxGateway(), self.settings)
        self.settlements = SettlementReconciler(self.storage, self.state_machine, self.settings)

    # Accounts

    def open_account(self, opening_balance: Decimal = Decimal("0.00"), currency: Optional[str] = None) -> Account:
        return self.wallet.open_account(opening_balance, currency)

    def get_account(self, account_id: UUID) -> Account:
        return self.wallet.get_account(account_id)

    def wallet_summary(self, account_id: UUID) -> WalletSummary:
        return self.wallet.summary(account_id)

    def ledger_history(self, account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        return self.wallet.history(account_id, limit, offset)

    # Payouts

    def create_payout(
        self, account_id: UUID, requested_amount: Decimal, bank_details: BankDetails,
        actor: str, notes: Optional[str] = None,
    ) -> PayoutRequest:
        return self.requests.create_payout(account_id, requested_amount, bank_details, actor, notes)

    def process_payout(
        self, payout_id: UUID, actor: str, notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PayoutRequest:
        return self.state_machine.process(payout_id, actor, notes, idempotency_key)

    def complete_payout(
        self, payout_id: UUID, actor: str, transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PayoutRequest:
        return self.state_machine.complete(payout_id, actor, transaction_id, notes)

    def reject_payout(self, payout_id: UUID, actor: str, reason: str) -> PayoutRequest:
        return self.state_machine.reject(payout_id, actor, reason)

    def get_payout(self, payout_id: UUID) -> PayoutRequest:
        return self.requests.get_payout(payout_id)

    def list_payouts(
        self,
        status: Optional[PayoutStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        period: Optional[ListPeriod] = None,
        account_id: Optional[UUID] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[PayoutRequest]:
        return self.requests.list_payouts(status, date_from, date_to, period, account_id, page, page_size)

    # Payments and refunds

    def record_payment(
        self, booking_reference: str, amount: Decimal, method: PaymentMethod, actor: str,
        gateway_transaction_id: Optional[str] = None, notes: Optional[str] = None,
    ) -> Payment:
        return self.refunds.record_payment(
            booking_reference, amount, method, actor, gateway_transaction_id, notes
        )

    def get_payment(self, payment_id: UUID) -> Payment:
        return self.refunds.get_payment(payment_id)

    def create_refund(self, payment_id: UUID, actor: str, amount: Optional[Decimal] = None) -> RefundRecord:
        return self.refunds.create_refund(payment_id, actor, amount)

    def refund_details(self, payment_id: UUID) -> Optional[RefundDetails]:
        return self.refunds.refund_details(payment_id)

    def resolve_refund(self, payment_id: UUID, actor: str, gateway_refund_id: Optional[str] = None) -> Payment:
        return self.refunds.resolve_refund(payment_id, actor, gateway_refund_id)

    # Settlement

    def create_batch(self, payout_ids: list[UUID], settlement_date: date, actor: str) -> SettlementBatch:
        return self.settlements.create_batch(payout_ids, settlement_date, actor)

    def submit_batch(self, batch_id: UUID, actor: str) -> SettlementBatch:
        return self.settlements.submit_batch(batch_id, actor)

    def complete_batch(self, batch_id: UUID, bank_reference: str, actor: str) -> SettlementBatch:
        return self.settlements.mark_batch_completed(batch_id, bank_reference, actor)

    def fail_batch(self, batch_id: UUID, reason: str, actor: str) -> SettlementBatch:
        return self.settlements.mark_batch_failed(batch_id, reason, actor)

    def get_batch(self, batch_id: UUID) -> SettlementBatch:
        return self.settlements.get_batch(batch_id)

    def list_batches(self, status: Optional[BatchStatus] = None) -> list[SettlementBatch]:
        return self.settlements.list_batches(status)
