from typing import Optional


class PayoutEngineError(Exception):
    code = "payout_engine_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PayoutEngineError):
    code = "validation_error"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class InvalidBankDetailsError(ValidationError):
    code = "invalid_bank_details"

    def __init__(self, message: str, missing_fields: Optional[list[str]] = None):
        super().__init__(message)
        self.missing_fields = missing_fields or []


class ComplianceVetoError(ValidationError):
    code = "compliance_veto"


class NotFoundError(PayoutEngineError):
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"


class PayoutNotFoundError(NotFoundError):
    code = "payout_not_found"


class PaymentNotFoundError(NotFoundError):
    code = "payment_not_found"


class BatchNotFoundError(NotFoundError):
    code = "batch_not_found"


class InsufficientBalanceError(PayoutEngineError):
    code = "insufficient_balance"


class InvalidStateTransitionError(PayoutEngineError):
    code = "invalid_state_transition"


class LedgerTimeoutError(PayoutEngineError):
    code = "ledger_timeout"
    retryable = True


class GatewayError(PayoutEngineError):
    """Failure reported by the payment gateway, kept verbatim."""

    code = "gateway_error"

    def __init__(self, message: str, gateway_code: Optional[str] = None):
        super().__init__(message)
        self.gateway_code = gateway_code


class GatewayTimeoutError(GatewayError):
    code = "gateway_timeout"
    retryable = True


class SettlementIntegrityError(PayoutEngineError):
    code = "settlement_integrity_error"
