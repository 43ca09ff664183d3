import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import (
    ComplianceVetoError,
    InsufficientBalanceError,
    InvalidBankDetailsError,
    PayoutNotFoundError,
    ValidationError,
)
from .models import BankDetails, ListPeriod, Page, PayoutRequest, PayoutStatus
from .storage import InMemoryStorage
from .tds import compute_tds, parse_money
from .wallet import WalletLedger

log = logging.getLogger(__name__)

PERIOD_DAYS = {
    ListPeriod.LAST_7_DAYS: 7,
    ListPeriod.LAST_30_DAYS: 30,
    ListPeriod.LAST_90_DAYS: 90,
    ListPeriod.LAST_YEAR: 365,
}


class ComplianceCheck(Protocol):
    def check_payout(self, account_id: UUID, amount: Decimal) -> Optional[str]:
        """Return a veto reason, or None to allow the payout."""


class PayoutRequestManager:
    def __init__(
        self,
        storage: InMemoryStorage,
        wallet: WalletLedger,
        settings: Optional[Settings] = None,
        compliance: Optional[ComplianceCheck] = None,
    ):
        self.storage = storage
        self.wallet = wallet
        self.settings = settings or get_settings()
        self.compliance = compliance

    def create_payout(
        self,
        account_id: UUID,
        requested_amount: Decimal,
        bank_details: BankDetails,
        actor: str,
        notes: Optional[str] = None,
    ) -> PayoutRequest:
        """Create a pending payout request.

        The balance check is read-only: funds are reserved only when the
        payout is processed, so two requests created back to back may
        together exceed the balance. The later ``process`` call fails in
        that case.
        """
        amount = parse_money(requested_amount, "Requested amount")

        problems = bank_details.problems()
        if problems:
            raise InvalidBankDetailsError(
                f"Bank details incomplete or malformed: {', '.join(problems)}",
                missing_fields=problems,
            )

        account = self.wallet.get_account(account_id)

        if self.compliance is not None:
            veto = self.compliance.check_payout(account_id, amount)
            if veto:
                log.warning("Compliance vetoed payout for account %s: %s", account_id, veto)
                raise ComplianceVetoError(f"Payout blocked by compliance: {veto}")

        if account.available_balance < amount:
            raise InsufficientBalanceError(
                f"Requested {amount} exceeds available balance {account.available_balance}"
            )

        tds, net = compute_tds(amount, self.settings.rate_table())
        now = datetime.now(timezone.utc)
        payout_id = uuid4()

        payout_data = {
            "id": payout_id,
            "account_id": account_id,
            "requested_amount": amount,
            "tds_amount": tds,
            "net_amount": net,
            "currency": account.currency,
            "bank_details": bank_details.model_dump(),
            "status": PayoutStatus.PENDING,
            "created_at": now,
            "created_by": actor,
            "notes": notes,
            "transaction_id": None,
            "settlement_batch_id": None,
            "status_history": [
                {"status": PayoutStatus.PENDING, "actor": actor, "at": now, "notes": notes}
            ],
            "version": 0,
        }

        with self.storage.transaction() as tx:
            tx.put("payouts", payout_id, payout_data)

        log.info("Created payout %s for account %s: requested=%s tds=%s net=%s",
                 payout_id, account_id, amount, tds, net)
        return PayoutRequest(**payout_data)

    def get_payout(self, payout_id: UUID) -> PayoutRequest:
        payout_data = self.storage.get("payouts", payout_id)
        if not payout_data:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return PayoutRequest(**payout_data)

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
        if page_size is None:
            page_size = self.settings.default_page_size
        if page < 1:
            raise ValidationError("page must be 1 or greater")
        if page_size < 1 or page_size > self.settings.max_page_size:
            raise ValidationError(f"page_size must be between 1 and {self.settings.max_page_size}")

        start, end = _date_window(date_from, date_to, period)

        payouts = []
        for row in self.storage.values("payouts"):
            if status is not None and row["status"] != status:
                continue
            if account_id is not None and row["account_id"] != account_id:
                continue
            if start is not None and row["created_at"] < start:
                continue
            if end is not None and row["created_at"] >= end:
                continue
            payouts.append(PayoutRequest(**row))
        payouts.sort(key=lambda p: p.created_at, reverse=True)

        count = len(payouts)
        total_pages = max(1, math.ceil(count / page_size))
        offset = (page - 1) * page_size

        return Page[PayoutRequest](
            count=count,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            next=page + 1 if page < total_pages else None,
            previous=page - 1 if page > 1 else None,
            results=payouts[offset:offset + page_size],
        )


def _date_window(
    date_from: Optional[date], date_to: Optional[date], period: Optional[ListPeriod]
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Half-open UTC window; explicit dates win over a named period."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")

    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc) if date_to else None

    if start is None and end is None and period in PERIOD_DAYS:
        start = datetime.now(timezone.utc) - timedelta(days=PERIOD_DAYS[period])
    return start, end
