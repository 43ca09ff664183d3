from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    GatewayError,
    GatewayTimeoutError,
    InsufficientBalanceError,
    InvalidBankDetailsError,
    InvalidStateTransitionError,
    LedgerTimeoutError,
    NotFoundError,
    PayoutEngineError,
    SettlementIntegrityError,
    ValidationError,
)
from .models import (
    Account, CompleteBatchRequest, CompletePayoutRequest, CreateBatchRequest,
    CreatePayoutRequest, CreateRefundRequest, FailBatchRequest, LedgerHistoryResponse,
    ListPeriod, OpenAccountRequest, Page, Payment, PayoutRequest, PayoutStatus,
    ProcessPayoutRequest, RecordPaymentRequest, RefundDetails, RefundRecord,
    RejectPayoutRequest, ResolveRefundRequest, SettlementBatch, SubmitBatchRequest, WalletSummary,
)
from .service import PayoutService

configure_logging()

app = FastAPI(
    title="Payout & Settlement API",
    description="Payout requests, TDS withholding, refunds and bank settlement reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

payout_service = PayoutService()

# Checked in order; subclasses before their parents
STATUS_BY_ERROR = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (GatewayTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (LedgerTimeoutError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (SettlementIntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _http_error(e: PayoutEngineError) -> HTTPException:
    status_code = next(
        (code for error_type, code in STATUS_BY_ERROR if isinstance(e, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    detail = {"code": e.code, "message": e.message, "retryable": e.retryable}
    if isinstance(e, GatewayError):
        detail["gateway_code"] = e.gateway_code
    if isinstance(e, InvalidBankDetailsError):
        detail["fields"] = e.missing_fields
    return HTTPException(status_code=status_code, detail=detail)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": get_settings().service_name}


@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(request: OpenAccountRequest) -> Account:
    try:
        return payout_service.open_account(request.opening_balance, request.currency)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}", response_model=WalletSummary, tags=["Accounts"])
def get_wallet_summary(account_id: UUID) -> WalletSummary:
    try:
        return payout_service.wallet_summary(account_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_account_ledger(account_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    try:
        return payout_service.ledger_history(account_id, limit, offset)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payouts", response_model=PayoutRequest, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def create_payout(request: CreatePayoutRequest) -> PayoutRequest:
    try:
        return payout_service.create_payout(
            request.account_id, request.requested_amount, request.bank_details,
            request.actor, request.notes,
        )
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/payouts", response_model=Page[PayoutRequest], tags=["Payouts"])
def list_payouts(
    payout_status: Optional[PayoutStatus] = Query(default=None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    period: Optional[ListPeriod] = None,
    account_id: Optional[UUID] = None,
    page: int = 1,
    page_size: Optional[int] = None,
) -> Page[PayoutRequest]:
    try:
        return payout_service.list_payouts(payout_status, date_from, date_to, period, account_id, page, page_size)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(payout_id: UUID) -> PayoutRequest:
    try:
        return payout_service.get_payout(payout_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/process", response_model=PayoutRequest, tags=["Payouts"])
def process_payout(payout_id: UUID, request: ProcessPayoutRequest) -> PayoutRequest:
    try:
        return payout_service.process_payout(payout_id, request.actor, request.notes, request.idempotency_key)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/complete", response_model=PayoutRequest, tags=["Payouts"])
def complete_payout(payout_id: UUID, request: CompletePayoutRequest) -> PayoutRequest:
    try:
        return payout_service.complete_payout(payout_id, request.actor, request.transaction_id, request.notes)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payouts/{payout_id}/reject", response_model=PayoutRequest, tags=["Payouts"])
def reject_payout(payout_id: UUID, request: RejectPayoutRequest) -> PayoutRequest:
    try:
        return payout_service.reject_payout(payout_id, request.actor, request.reason)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payments", response_model=Payment, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def record_payment(request: RecordPaymentRequest) -> Payment:
    try:
        return payout_service.record_payment(
            request.booking_reference, request.amount, request.method, request.actor,
            request.gateway_transaction_id, request.notes,
        )
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/payments/{payment_id}", response_model=Payment, tags=["Payments"])
def get_payment(payment_id: UUID) -> Payment:
    try:
        return payout_service.get_payment(payment_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/payments/{payment_id}/refund", response_model=Optional[RefundDetails], tags=["Payments"])
def get_refund_details(payment_id: UUID) -> Optional[RefundDetails]:
    try:
        return payout_service.refund_details(payment_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/payments/{payment_id}/refund/resolve", response_model=Payment, tags=["Payments"])
def resolve_refund(payment_id: UUID, request: ResolveRefundRequest) -> Payment:
    try:
        return payout_service.resolve_refund(payment_id, request.actor, request.gateway_refund_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/refunds", response_model=RefundRecord, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def create_refund(request: CreateRefundRequest) -> RefundRecord:
    try:
        return payout_service.create_refund(request.payment_id, request.actor, request.amount)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/settlements", response_model=SettlementBatch, status_code=status.HTTP_201_CREATED, tags=["Settlement"])
def create_batch(request: CreateBatchRequest) -> SettlementBatch:
    try:
        return payout_service.create_batch(request.payout_ids, request.settlement_date, request.actor)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.get("/settlements/{batch_id}", response_model=SettlementBatch, tags=["Settlement"])
def get_batch(batch_id: UUID) -> SettlementBatch:
    try:
        return payout_service.get_batch(batch_id)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/settlements/{batch_id}/submit", response_model=SettlementBatch, tags=["Settlement"])
def submit_batch(batch_id: UUID, request: SubmitBatchRequest) -> SettlementBatch:
    try:
        return payout_service.submit_batch(batch_id, request.actor)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/settlements/{batch_id}/complete", response_model=SettlementBatch, tags=["Settlement"])
def complete_batch(batch_id: UUID, request: CompleteBatchRequest) -> SettlementBatch:
    try:
        return payout_service.complete_batch(batch_id, request.bank_reference, request.actor)
    except PayoutEngineError as e:
        raise _http_error(e)


@app.post("/settlements/{batch_id}/fail", response_model=SettlementBatch, tags=["Settlement"])
def fail_batch(batch_id: UUID, request: FailBatchRequest) -> SettlementBatch:
    try:
        return payout_service.fail_batch(batch_id, request.reason, request.actor)
    except PayoutEngineError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
