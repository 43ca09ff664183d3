import logging
from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import (
    GatewayTimeoutError,
    InvalidAmountError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    ValidationError,
)
from .gateway import Gateway, GatewayClient
from .models import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundDetails,
    RefundRecord,
    RefundStatus,
)
from .storage import InMemoryStorage, RowLockedError, Transaction
from .tds import parse_money

log = logging.getLogger(__name__)


class RefundManager:
    """Single refund per payment, full or partial, through the gateway.

    The gateway call runs inside the storage transaction, so a refund is
    persisted only once the gateway has accepted it. Gateway errors leave no
    trace in storage and are never retried here. A timeout marks the refund
    as in doubt on the payment until an operator resolves it.
    """

    def __init__(self, storage: InMemoryStorage, gateway: Gateway, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.gateway = GatewayClient(gateway, timeout_seconds=self.settings.gateway_timeout_seconds)

    def record_payment(
        self,
        booking_reference: str,
        amount: Decimal,
        method: PaymentMethod,
        actor: str,
        gateway_transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Payment:
        amount = parse_money(amount, "Payment amount")
        if method == PaymentMethod.ONLINE and not gateway_transaction_id:
            raise ValidationError("Online payments need the gateway transaction id")
        if method != PaymentMethod.ONLINE and gateway_transaction_id:
            raise ValidationError("Only online payments carry a gateway transaction id")

        payment_id = uuid4()
        payment_data = {
            "id": payment_id,
            "booking_reference": booking_reference,
            "amount": amount,
            "currency": self.settings.currency,
            "method": method,
            "status": PaymentStatus.COMPLETED,
            "gateway_transaction_id": gateway_transaction_id,
            "notes": notes,
            "refund_id": None,
            "in_doubt_refund_amount": None,
            "created_at": datetime.now(timezone.utc),
            "created_by": actor,
        }
        with self.storage.transaction() as tx:
            tx.put("payments", payment_id, payment_data)

        log.info("Recorded %s payment %s of %s for booking %s",
                 method.value, payment_id, amount, booking_reference)
        return Payment(**payment_data)

    def get_payment(self, payment_id: UUID) -> Payment:
        payment_data = self.storage.get("payments", payment_id)
        if not payment_data:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return Payment(**payment_data)

    def create_refund(self, payment_id: UUID, actor: str, amount: Optional[Decimal] = None) -> RefundRecord:
        """Refund ``amount`` of a completed online payment; omit it for a full refund.

        A gateway timeout leaves the payment with an in-doubt refund: the
        refund may still land, so further refunds are refused until
        ``resolve_refund`` settles it.
        """
        if not actor or not actor.strip():
            raise ValidationError("An actor is required to refund a payment")

        gateway_refund_id = None
        timed_out = None
        try:
            with self.storage.transaction() as tx:
                payment = self._locked_payment(tx, payment_id)
                refund_amount = self._refundable_amount(payment, amount)

                try:
                    gateway_refund_id = self.gateway.refund(
                        payment["gateway_transaction_id"], refund_amount,
                        on_late_result=partial(self._late_gateway_result, payment_id, refund_amount),
                    )
                except GatewayTimeoutError as e:
                    payment["in_doubt_refund_amount"] = refund_amount
                    tx.put("payments", payment_id, payment)
                    timed_out = e
                else:
                    refund = self._record_refund(tx, payment, refund_amount, gateway_refund_id, actor)
        except Exception as e:
            if gateway_refund_id is not None:
                self._reconciliation_required(payment_id, gateway_refund_id, amount, e)
            raise

        if timed_out is not None:
            log.warning("Refund of payment %s is in doubt after a gateway timeout (actor=%s)", payment_id, actor)
            raise timed_out

        log.info("Refunded %s of payment %s (gateway refund %s, actor=%s)",
                 refund.refund_amount, payment_id, gateway_refund_id, actor)
        return refund

    def resolve_refund(self, payment_id: UUID, actor: str, gateway_refund_id: Optional[str] = None) -> Payment:
        """Settle an in-doubt refund once the gateway's answer is known.

        With ``gateway_refund_id`` the refund landed and is recorded for the
        in-doubt amount. Without it the refund never happened and the
        payment is open to refunds again.
        """
        if not actor or not actor.strip():
            raise ValidationError("An actor is required to resolve a refund")

        with self.storage.transaction() as tx:
            payment = self._locked_payment(tx, payment_id)
            in_doubt = payment["in_doubt_refund_amount"]
            if in_doubt is None:
                raise InvalidStateTransitionError(f"Payment {payment_id} has no refund in doubt")

            payment["in_doubt_refund_amount"] = None
            if gateway_refund_id:
                self._record_refund(tx, payment, in_doubt, gateway_refund_id, actor)
            else:
                tx.put("payments", payment_id, payment)

        log.info("Resolved in-doubt refund of %s on payment %s as %s (actor=%s)",
                 in_doubt, payment_id, gateway_refund_id or "not refunded", actor)
        return Payment(**payment)

    def get_refund_for_payment(self, payment_id: UUID) -> Optional[RefundRecord]:
        payment = self.get_payment(payment_id)
        if payment.refund_id is None:
            return None
        return RefundRecord(**self.storage.get("refunds", payment.refund_id))

    def refund_details(self, payment_id: UUID) -> Optional[RefundDetails]:
        payment = self.get_payment(payment_id)
        refund = self.get_refund_for_payment(payment_id)
        if refund is None:
            return None
        return RefundDetails(
            refund_id=refund.id,
            gateway_refund_id=refund.gateway_refund_id,
            refund_amount=refund.refund_amount,
            original_amount=payment.amount,
            balance_amount=payment.amount - refund.refund_amount,
            is_full=refund.is_full,
        )

    def _locked_payment(self, tx: Transaction, payment_id: UUID) -> dict:
        try:
            tx.lock("payments", payment_id)
        except RowLockedError:
            raise InvalidStateTransitionError(f"A refund for payment {payment_id} is already in flight")
        payment = tx.get("payments", payment_id)
        if not payment:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def _refundable_amount(self, payment: dict, amount: Optional[Decimal]) -> Decimal:
        if payment["refund_id"] is not None:
            raise ValidationError(f"Payment {payment['id']} has already been refunded")
        if payment["in_doubt_refund_amount"] is not None:
            raise InvalidStateTransitionError(
                f"Payment {payment['id']} has a refund of {payment['in_doubt_refund_amount']} in doubt; "
                "resolve it against the gateway before refunding again"
            )
        if payment["status"] != PaymentStatus.COMPLETED:
            raise ValidationError(f"Only completed payments can be refunded, payment is {payment['status'].value}")
        if payment["method"] != PaymentMethod.ONLINE:
            raise ValidationError("Only online payments can be refunded through the gateway")
        if not payment["gateway_transaction_id"]:
            raise ValidationError("Payment has no gateway transaction to refund")

        if amount is None:
            return payment["amount"]
        refund_amount = parse_money(amount, "Refund amount")
        if refund_amount > payment["amount"]:
            raise InvalidAmountError(
                f"Refund amount {refund_amount} exceeds payment amount {payment['amount']}"
            )
        return refund_amount

    def _record_refund(self, tx: Transaction, payment: dict, refund_amount: Decimal,
                       gateway_refund_id: str, actor: str) -> RefundRecord:
        refund_data = {
            "id": uuid4(),
            "payment_id": payment["id"],
            "refund_amount": refund_amount,
            "is_full": refund_amount == payment["amount"],
            "gateway_refund_id": gateway_refund_id,
            "status": RefundStatus.PROCESSED,
            "created_at": datetime.now(timezone.utc),
            "created_by": actor,
        }
        payment["refund_id"] = refund_data["id"]
        payment["status"] = (
            PaymentStatus.REFUNDED if refund_data["is_full"] else PaymentStatus.PARTIALLY_REFUNDED
        )
        refund = RefundRecord(**refund_data)
        tx.put("refunds", refund.id, refund_data)
        tx.put("payments", payment["id"], payment)
        return refund

    def _late_gateway_result(self, payment_id: UUID, amount: Decimal,
                             gateway_refund_id: Optional[str], error: Optional[BaseException]) -> None:
        # Runs on the gateway thread; must not take row locks
        if error is not None:
            log.warning("Timed-out refund of payment %s failed at the gateway: %s", payment_id, error)
            self.storage.record_reconciliation_event(
                "refund_failed_after_timeout",
                payment_id=payment_id,
                requested_amount=amount,
                error=str(error),
            )
            return
        self._reconciliation_required(
            payment_id, gateway_refund_id, amount,
            GatewayTimeoutError("Gateway answered after the deadline", gateway_code="timeout"),
        )

    def _reconciliation_required(self, payment_id: UUID, gateway_refund_id: str,
                                 amount: Optional[Decimal], error: Exception) -> None:
        log.critical(
            "RECONCILIATION REQUIRED: gateway refund %s for payment %s succeeded but was not recorded: %s",
            gateway_refund_id, payment_id, error,
        )
        self.storage.record_reconciliation_event(
            "refund_not_persisted",
            payment_id=payment_id,
            gateway_refund_id=gateway_refund_id,
            requested_amount=amount,
            error=str(error),
        )

