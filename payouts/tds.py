"""
TDS (tax deducted at source) withholding on payouts.

The calculator is pure: the same requested amount and rate table always
produce the same split, and the net amount is derived from the rounded TDS
so that ``tds + net == requested`` holds exactly.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from pydantic import BaseModel, Field, field_validator

from .errors import InvalidAmountError

SUB_UNIT = Decimal("0.01")


class TdsSlab(BaseModel):
    min_amount: Decimal = Field(..., ge=0)
    rate: Decimal

    @field_validator("rate")
    @classmethod
    def _rate_in_range(cls, value: Decimal) -> Decimal:
        return _check_rate(value)


class TdsRateTable(BaseModel):
    default_rate: Decimal
    slabs: list[TdsSlab] = Field(default_factory=list)

    @field_validator("default_rate")
    @classmethod
    def _rate_in_range(cls, value: Decimal) -> Decimal:
        return _check_rate(value)

    def rate_for(self, amount: Decimal) -> Decimal:
        """Rate of the highest slab whose threshold the amount reaches."""
        applicable = [s for s in self.slabs if amount >= s.min_amount]
        if not applicable:
            return self.default_rate
        return max(applicable, key=lambda s: s.min_amount).rate


def _check_rate(value: Decimal) -> Decimal:
    if value < 0 or value > 1:
        raise ValueError("TDS rate must be between 0 and 1")
    return value


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(SUB_UNIT, rounding=ROUND_HALF_EVEN)


def compute_tds(requested_amount: Decimal, rate_table: TdsRateTable) -> tuple[Decimal, Decimal]:
    """Split ``requested_amount`` into ``(tds, net)``."""
    requested = Decimal(requested_amount)
    tds = round_money(requested * rate_table.rate_for(requested))
    net = requested - tds
    return tds, net


def parse_money(value, label: str = "Amount") -> Decimal:
    """Positive amount with at most two decimal places."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"{label} {value!r} is not a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(f"{label} must be greater than zero, got {value}")
    try:
        quantized = amount.quantize(SUB_UNIT)
    except InvalidOperation:
        raise InvalidAmountError(f"{label} {value} is too large")
    if amount != quantized:
        raise InvalidAmountError(f"{label} {amount} has more than two decimal places")
    return quantized
