"""Pure settlement arithmetic tests."""
from decimal import Decimal

import pytest

from business.errors import ValidationError
from business.settlement import (
    Disposition, ShareInput, allocate_largest_remainder, refund_ceiling,
    resolve_commission_percentage, settle_promotional, settle_refund,
    settle_shared, settle_single, to_decimal, value_per_session
)

D = Decimal


def assert_identity(result):
    assert result.commission_worker + result.commission_house + result.fee_amount == result.value_total


class TestSettleSingle:

    def test_card_payment_example(self):
        result = settle_single(100, 50, 3)
        assert result.commission_gross == D("50.00")
        assert result.fee_amount == D("3.00")
        assert result.commission_worker == D("47.00")
        assert result.commission_house == D("50.00")
        assert_identity(result)

    def test_worker_bears_the_fee(self):
        cash = settle_single(100, 50, 0)
        card = settle_single(100, 50, 3)
        assert cash.commission_house == card.commission_house
        assert cash.commission_worker - card.commission_worker == card.fee_amount

    def test_rounds_half_up_to_cents(self):
        result = settle_single("33.33", 50, "1.99")
        assert result.commission_gross == D("16.67")
        assert result.fee_amount == D("0.66")
        assert result.commission_worker == D("16.01")
        assert result.commission_house == D("16.66")
        assert_identity(result)

    def test_missing_percentage_uses_default(self):
        assert settle_single(80, None).commission_gross == D("40.00")

    @pytest.mark.parametrize("value,pct,fee", [
        ("0.01", 50, 3), ("19.99", 33.33, 4.99), ("1234.56", 45, 2.5), ("0", 50, 3),
    ])
    def test_identity_holds(self, value, pct, fee):
        assert_identity(settle_single(value, pct, fee))

    def test_percentage_out_of_range(self):
        with pytest.raises(ValidationError):
            settle_single(100, 120)
        with pytest.raises(ValidationError):
            resolve_commission_percentage(-1)

    def test_non_numeric_value(self):
        with pytest.raises(ValidationError):
            to_decimal("abc")
        with pytest.raises(ValidationError):
            to_decimal(None)
        with pytest.raises(ValidationError):
            to_decimal(float("nan"))


class TestPromotionalAndRefund:

    def test_promotional_is_all_zero(self):
        result = settle_promotional()
        assert result.value_total == result.commission_worker == result.commission_house == D("0")
        assert result.fee_amount == D("0")

    def test_refund_reverses_seller_commission(self):
        result = settle_refund(150, 50)
        assert result.value_total == D("-150.00")
        assert result.commission_worker == D("-75.00")
        assert result.commission_house == D("-75.00")
        assert result.fee_amount == D("0.00")
        assert_identity(result)


class TestDisposition:

    def test_parse(self):
        assert Disposition.parse("PAYMENT") is Disposition.PAYMENT
        assert Disposition.parse(Disposition.PACKAGE) is Disposition.PACKAGE
        with pytest.raises(ValidationError):
            Disposition.parse("barter")


class TestSharedSettlement:

    def test_two_workers_fully_distributed(self):
        result = settle_shared(100, [
            ShareInput(1, D("60"), D("50")),
            ShareInput(2, D("40"), D("40")),
        ], 3)
        by_worker = {s.worker_id: s for s in result.shares}
        assert by_worker[1].commission_gross == D("30.00")
        assert by_worker[1].fee_amount == D("1.80")
        assert by_worker[1].commission_worker == D("28.20")
        assert by_worker[2].commission_gross == D("16.00")
        assert by_worker[2].fee_amount == D("1.20")
        assert by_worker[2].commission_worker == D("14.80")
        assert result.commission_worker == D("43.00")
        assert result.fee_amount == D("3.00")
        assert result.commission_house == D("54.00")
        assert_identity(result)

    def test_house_absorbs_fee_on_undistributed_part(self):
        result = settle_shared(100, [
            ShareInput(1, D("60"), D("50")),
            ShareInput(2, D("30"), D("40")),
        ], 3)
        assert result.undistributed == D("10.00")
        assert sum(s.fee_amount for s in result.shares) == D("2.70")
        assert result.fee_amount == D("3.00")
        assert result.commission_worker == D("39.30")
        assert result.commission_house == D("57.70")
        assert_identity(result)

    def test_share_fees_sum_to_rounded_total(self):
        shares = [ShareInput(i, D("33.33")) for i in range(1, 4)]
        result = settle_shared("99.99", shares, "1.99")
        fees = [s.fee_amount for s in result.shares]
        assert sum(fees) == (D("99.99") * D("1.99") / 100).quantize(D("0.01"))
        assert_identity(result)

    @pytest.mark.parametrize("shares,message", [
        ([ShareInput(1, D("100"))], "at least two"),
        ([ShareInput(1, D("50")), ShareInput(1, D("50"))], "more than once"),
        ([ShareInput(1, D("-1")), ShareInput(2, D("50"))], "negative"),
        ([ShareInput(1, D("60")), ShareInput(2, D("50"))], "exceeds"),
        ([ShareInput(1, D("-0.004")), ShareInput(2, D("50"))], "negative"),
        ([ShareInput(1, D("50.004")), ShareInput(2, D("50.004"))], "exceeds"),
        ([ShareInput(1, D("50.005")), ShareInput(2, D("49.995"))], "fractions of a cent"),
    ])
    def test_invalid_splits(self, shares, message):
        with pytest.raises(ValidationError, match=message):
            settle_shared(100, shares, 0)


class TestLargestRemainder:

    def test_distributes_leftover_cents_by_fraction(self):
        raw = [D("0.333"), D("0.333"), D("0.334")]
        assert allocate_largest_remainder(raw, D("1.00")) == [D("0.33"), D("0.33"), D("0.34")]

    def test_ties_go_to_earlier_entries(self):
        raw = [D("0.005"), D("0.005")]
        assert allocate_largest_remainder(raw, D("0.01")) == [D("0.01"), D("0.00")]

    def test_exact_amounts_untouched(self):
        raw = [D("1.80"), D("1.20")]
        assert allocate_largest_remainder(raw, D("3.00")) == [D("1.80"), D("1.20")]


class TestPackageMath:

    def test_value_per_session(self):
        assert value_per_session(250, 5) == D("50.00")
        assert value_per_session(100, 3) == D("33.33")
        with pytest.raises(ValidationError):
            value_per_session(100, 0)

    def test_refund_ceiling(self):
        assert refund_ceiling(5, 2, D("50")) == D("150.00")
        assert refund_ceiling(5, 5, D("50")) == D("0.00")
