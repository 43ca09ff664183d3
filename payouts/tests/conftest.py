from decimal import Decimal

import pytest

from payouts.config import Settings
from payouts.models import BankDetails
from payouts.service import PayoutService


@pytest.fixture
def settings():
    return Settings(
        tds_rate=Decimal("0.10"),
        gateway_timeout_seconds=2.0,
        transition_timeout_seconds=0.5,
    )


@pytest.fixture
def service(settings):
    return PayoutService(settings=settings)


@pytest.fixture
def bank_details():
    return BankDetails(
        bank_name="State Bank of India",
        account_number="12345678901",
        ifsc_code="SBIN0001234",
        account_holder_name="John Referrer",
    )


@pytest.fixture
def account(service):
    """Account holding 10,000."""
    return service.open_account(Decimal("10000.00"))
