"""Tax computation for billing amounts.

Derives service fee, VAT, gross, withholding tax and net receivable for a
billing amount. Every derived field is rounded half-up to the cent before it
feeds the next one, so ``gross == fee + vat`` and ``net == gross - wht``
hold exactly on the rounded values.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import structlog

from billing_engine.errors import InvalidAmountError, InvalidRateError
from billing_engine.models import DiscountType, VatPolicy

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
VAT_RATE = Decimal("0.12")


def quantize(value: Decimal) -> Decimal:
    """Round to two decimal places, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Decimal | int | float | str | None, field_name: str = "amount") -> Decimal:
    """Convert user input to ``Decimal`` via ``str`` to avoid binary float noise."""
    if value is None:
        raise InvalidAmountError(f"{field_name} is required")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise InvalidAmountError(f"{field_name} is not a number: {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmountError(f"{field_name} is not a finite number: {value!r}")
    return result


def validate_rate(rate: Decimal | float | str | None, name: str) -> Decimal:
    if rate is None:
        raise InvalidRateError(f"{name} is required")
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRateError(f"{name} is not a number: {rate!r}") from exc
    if not (Decimal("0") <= value < Decimal("1")):
        raise InvalidRateError(f"{name} must be in [0, 1), got {value}", details={"rate": str(value)})
    return value


@dataclass(frozen=True)
class TaxBreakdown:
    """Financial breakdown of a billing amount, all fields at cent precision."""

    service_fee: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    withholding_tax: Decimal
    net_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> dict[str, str]:
        return {
            "service_fee": str(self.service_fee),
            "vat_amount": str(self.vat_amount),
            "gross_amount": str(self.gross_amount),
            "withholding_tax": str(self.withholding_tax),
            "net_amount": str(self.net_amount),
            "discount_amount": str(self.discount_amount),
        }


def compute_breakdown(
    billing_amount: Decimal | int | float | str,
    amount_is_vat_inclusive: bool,
    vat_policy: VatPolicy,
    has_withholding: bool,
    withholding_rate: Decimal | float | str | None = None,
    vat_rate: Decimal | float | str = VAT_RATE,
) -> TaxBreakdown:
    """Compute the tax breakdown of a billing amount.

    Args:
        billing_amount: Positive amount as configured on the schedule.
        amount_is_vat_inclusive: Whether the amount already contains VAT.
        vat_policy: VAT or NON_VAT customer.
        has_withholding: Whether the customer withholds tax.
        withholding_rate: Fraction in ``[0, 1)``; required with withholding.
        vat_rate: VAT fraction, 12% unless configured otherwise.

    Returns:
        The rounded breakdown.

    Raises:
        InvalidAmountError: If the amount is not positive.
        InvalidRateError: If a required rate is missing or out of range.
    """
    amount = to_decimal(billing_amount, "billing_amount")
    if amount <= 0:
        raise InvalidAmountError(
            f"billing_amount must be positive, got {amount}",
            details={"billing_amount": str(amount)},
        )

    wrate = validate_rate(withholding_rate, "withholding_rate") if has_withholding else None

    if vat_policy == VatPolicy.NON_VAT:
        service_fee = quantize(amount)
        vat_amount = Decimal("0.00")
    else:
        rate = validate_rate(vat_rate, "vat_rate")
        if amount_is_vat_inclusive:
            service_fee = quantize(amount / (Decimal("1") + rate))
        else:
            service_fee = quantize(amount)
        vat_amount = quantize(service_fee * rate)

    gross_amount = service_fee + vat_amount
    withholding_tax = quantize(service_fee * wrate) if wrate is not None else Decimal("0.00")
    net_amount = gross_amount - withholding_tax

    return TaxBreakdown(
        service_fee=service_fee,
        vat_amount=vat_amount,
        gross_amount=gross_amount,
        withholding_tax=withholding_tax,
        net_amount=net_amount,
    )


def apply_discount(
    amount: Decimal | int | float | str,
    discount_type: DiscountType | None,
    discount_value: Decimal | int | float | str | None,
) -> tuple[Decimal, Decimal]:
    """Apply a line-item discount before tax.

    Returns:
        ``(discounted_amount, discount_amount)``. The discount never exceeds
        the amount.
    """
    base = to_decimal(amount)
    if discount_type is None or discount_value is None:
        return base, Decimal("0.00")

    value = to_decimal(discount_value, "discount_value")
    if value < 0:
        raise InvalidAmountError(f"discount_value must not be negative, got {value}")

    if discount_type == DiscountType.PERCENTAGE:
        if value > 100:
            raise InvalidAmountError(f"percentage discount above 100: {value}")
        discount = quantize(base * value / Decimal("100"))
    else:
        discount = quantize(value)

    discount = min(discount, base)
    return base - discount, discount


def compute_line_breakdown(
    amount: Decimal | int | float | str,
    vat_policy: VatPolicy,
    has_withholding: bool,
    withholding_rate: Decimal | float | str | None = None,
    vat_rate: Decimal | float | str = VAT_RATE,
    amount_is_vat_inclusive: bool = False,
    discount_type: DiscountType | None = None,
    discount_value: Decimal | int | float | str | None = None,
) -> TaxBreakdown:
    """Breakdown for a single line item, discount applied to the amount first."""
    discounted, discount = apply_discount(amount, discount_type, discount_value)
    breakdown = compute_breakdown(
        discounted,
        amount_is_vat_inclusive,
        vat_policy,
        has_withholding,
        withholding_rate,
        vat_rate,
    )
    if discount:
        logger.debug("discount_applied", amount=str(amount), discount=str(discount))
    return TaxBreakdown(
        service_fee=breakdown.service_fee,
        vat_amount=breakdown.vat_amount,
        gross_amount=breakdown.gross_amount,
        withholding_tax=breakdown.withholding_tax,
        net_amount=breakdown.net_amount,
        discount_amount=discount,
    )


def sum_breakdowns(breakdowns: Iterable[TaxBreakdown]) -> TaxBreakdown:
    """Total several line-item breakdowns field by field."""
    items = list(breakdowns)
    if not items:
        raise InvalidAmountError("at least one line item is required")

    def total(attr: str) -> Decimal:
        return sum((getattr(b, attr) for b in items), Decimal("0.00"))

    return TaxBreakdown(
        service_fee=total("service_fee"),
        vat_amount=total("vat_amount"),
        gross_amount=total("gross_amount"),
        withholding_tax=total("withholding_tax"),
        net_amount=total("net_amount"),
        discount_amount=total("discount_amount"),
    )
