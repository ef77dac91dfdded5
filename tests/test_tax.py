"""Tests for tax computation."""

from decimal import Decimal

import pytest

from billing_engine.errors import InvalidAmountError, InvalidRateError
from billing_engine.models import DiscountType, VatPolicy
from billing_engine.tax import (
    TaxBreakdown,
    apply_discount,
    compute_breakdown,
    compute_line_breakdown,
    quantize,
    sum_breakdowns,
    to_decimal,
    validate_rate,
)


class TestComputeBreakdown:
    """Tests for compute_breakdown."""

    def test_vat_inclusive_amount(self):
        """Test that a VAT-inclusive amount is split into fee and VAT."""
        result = compute_breakdown(Decimal("11200"), True, VatPolicy.VAT, False)

        assert result.service_fee == Decimal("10000.00")
        assert result.vat_amount == Decimal("1200.00")
        assert result.gross_amount == Decimal("11200.00")
        assert result.withholding_tax == Decimal("0.00")
        assert result.net_amount == Decimal("11200.00")

    def test_vat_inclusive_with_withholding(self):
        """Test withholding is computed on the service fee."""
        result = compute_breakdown(
            Decimal("11200"), True, VatPolicy.VAT, True, withholding_rate=Decimal("0.02")
        )

        assert result.withholding_tax == Decimal("200.00")
        assert result.net_amount == Decimal("11000.00")

    def test_vat_exclusive_amount(self):
        """Test that a VAT-exclusive amount becomes the service fee."""
        result = compute_breakdown(Decimal("10000"), False, VatPolicy.VAT, False)

        assert result.service_fee == Decimal("10000.00")
        assert result.vat_amount == Decimal("1200.00")
        assert result.gross_amount == Decimal("11200.00")

    def test_non_vat_customer(self):
        """Test NON_VAT customers pay no VAT regardless of inclusivity."""
        result = compute_breakdown(Decimal("5000"), True, VatPolicy.NON_VAT, False)

        assert result.service_fee == Decimal("5000.00")
        assert result.vat_amount == Decimal("0.00")
        assert result.gross_amount == Decimal("5000.00")
        assert result.net_amount == Decimal("5000.00")

    def test_intermediate_rounding_keeps_sums_exact(self):
        """Test gross and net equal the sums of their rounded parts."""
        result = compute_breakdown(
            Decimal("1000"), True, VatPolicy.VAT, True, withholding_rate=Decimal("0.02")
        )

        assert result.service_fee == Decimal("892.86")
        assert result.vat_amount == Decimal("107.14")
        assert result.gross_amount == result.service_fee + result.vat_amount
        assert result.withholding_tax == Decimal("17.86")
        assert result.net_amount == result.gross_amount - result.withholding_tax
        assert result.net_amount == Decimal("982.14")

    def test_custom_vat_rate(self):
        """Test a configured VAT rate overrides the default."""
        result = compute_breakdown(
            Decimal("1000"), False, VatPolicy.VAT, False, vat_rate=Decimal("0.10")
        )

        assert result.vat_amount == Decimal("100.00")
        assert result.gross_amount == Decimal("1100.00")

    def test_accepts_string_amount(self):
        """Test string amounts are converted without float noise."""
        result = compute_breakdown("100.10", False, VatPolicy.NON_VAT, False)

        assert result.service_fee == Decimal("100.10")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), "abc"])
    def test_rejects_invalid_amount(self, amount):
        """Test non-positive or non-numeric amounts are rejected."""
        with pytest.raises(InvalidAmountError):
            compute_breakdown(amount, False, VatPolicy.VAT, False)

    def test_requires_withholding_rate(self):
        """Test withholding without a rate is rejected."""
        with pytest.raises(InvalidRateError):
            compute_breakdown(Decimal("1000"), False, VatPolicy.VAT, True)

    @pytest.mark.parametrize("rate", [Decimal("1"), Decimal("-0.01"), Decimal("1.5")])
    def test_rejects_out_of_range_withholding_rate(self, rate):
        """Test withholding rates outside [0, 1) are rejected."""
        with pytest.raises(InvalidRateError):
            compute_breakdown(Decimal("1000"), False, VatPolicy.VAT, True, withholding_rate=rate)

    def test_to_dict(self):
        """Test breakdown serialization uses strings."""
        result = compute_breakdown(Decimal("10000"), False, VatPolicy.VAT, False)

        data = result.to_dict()

        assert data["service_fee"] == "10000.00"
        assert data["vat_amount"] == "1200.00"
        assert data["discount_amount"] == "0.00"


class TestHelpers:
    """Tests for rounding and conversion helpers."""

    def test_quantize_rounds_half_up(self):
        """Test half-cent values round away from zero."""
        assert quantize(Decimal("0.125")) == Decimal("0.13")
        assert quantize(Decimal("0.124")) == Decimal("0.12")

    def test_to_decimal_from_float(self):
        """Test floats are converted through their string form."""
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_none(self):
        """Test a missing value is rejected."""
        with pytest.raises(InvalidAmountError):
            to_decimal(None)

    def test_to_decimal_rejects_infinity(self):
        """Test non-finite values are rejected."""
        with pytest.raises(InvalidAmountError):
            to_decimal("Infinity")

    def test_validate_rate(self):
        """Test a valid rate is returned as Decimal."""
        assert validate_rate("0.12", "vat_rate") == Decimal("0.12")

    def test_validate_rate_rejects_garbage(self):
        """Test non-numeric rates are rejected."""
        with pytest.raises(InvalidRateError):
            validate_rate("twelve", "vat_rate")


class TestDiscounts:
    """Tests for line-item discounts."""

    def test_no_discount(self):
        """Test amounts pass through without a discount."""
        assert apply_discount(Decimal("1000"), None, None) == (Decimal("1000"), Decimal("0.00"))

    def test_percentage_discount(self):
        """Test a percentage discount."""
        discounted, discount = apply_discount(Decimal("1000"), DiscountType.PERCENTAGE, 10)

        assert discounted == Decimal("900.00")
        assert discount == Decimal("100.00")

    def test_fixed_discount(self):
        """Test a fixed discount."""
        discounted, discount = apply_discount(Decimal("1000"), DiscountType.FIXED, "250")

        assert discounted == Decimal("750.00")
        assert discount == Decimal("250.00")

    def test_fixed_discount_capped_at_amount(self):
        """Test a discount never exceeds the amount."""
        discounted, discount = apply_discount(Decimal("1000"), DiscountType.FIXED, "1500")

        assert discount == Decimal("1000")
        assert discounted == Decimal("0")

    def test_percentage_above_hundred_rejected(self):
        """Test percentage discounts above 100 are rejected."""
        with pytest.raises(InvalidAmountError):
            apply_discount(Decimal("1000"), DiscountType.PERCENTAGE, 101)

    def test_negative_discount_rejected(self):
        """Test negative discounts are rejected."""
        with pytest.raises(InvalidAmountError):
            apply_discount(Decimal("1000"), DiscountType.FIXED, -5)

    def test_line_breakdown_applies_discount_before_tax(self):
        """Test VAT is computed on the discounted amount."""
        result = compute_line_breakdown(
            Decimal("1000"),
            VatPolicy.VAT,
            False,
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
        )

        assert result.service_fee == Decimal("900.00")
        assert result.vat_amount == Decimal("108.00")
        assert result.gross_amount == Decimal("1008.00")
        assert result.discount_amount == Decimal("100.00")


class TestSumBreakdowns:
    """Tests for totalling line breakdowns."""

    def test_sums_fields(self):
        """Test each field is summed independently."""
        first = compute_breakdown(Decimal("1000"), False, VatPolicy.VAT, False)
        second = compute_breakdown(Decimal("500"), False, VatPolicy.VAT, False)

        total = sum_breakdowns([first, second])

        assert total.service_fee == Decimal("1500.00")
        assert total.vat_amount == Decimal("180.00")
        assert total.gross_amount == Decimal("1680.00")
        assert total.net_amount == Decimal("1680.00")

    def test_empty_rejected(self):
        """Test at least one breakdown is required."""
        with pytest.raises(InvalidAmountError):
            sum_breakdowns([])

    def test_result_type(self):
        """Test the total is a TaxBreakdown."""
        one = compute_breakdown(Decimal("1"), False, VatPolicy.NON_VAT, False)

        assert isinstance(sum_breakdowns([one]), TaxBreakdown)
