"""
Test suite for amortization module

EMI and related loan arithmetic. All results must be exact to the paisa.
"""

import pytest
from decimal import Decimal
from datetime import date

from core_lending import amortization
from core_lending.exceptions import InvalidInput, ValidationError


class TestEMI:
    """Test reduce-balance EMI calculation"""

    def test_known_emi_values(self):
        assert amortization.calculate_emi(Decimal('100000.00'), Decimal('12.00'), 12) == Decimal('8884.88')
        assert amortization.calculate_emi(Decimal('100000.00'), Decimal('12.00'), 6) == Decimal('17254.84')

    def test_emi_is_two_decimal_places(self):
        emi = amortization.calculate_emi(Decimal('123456.78'), Decimal('10.75'), 37)
        assert emi == emi.quantize(Decimal('0.01'))
        assert emi > Decimal('0')

    def test_emi_accepts_strings_and_ints(self):
        assert amortization.calculate_emi("100000", 12, 12) == Decimal('8884.88')

    def test_emi_rejects_float(self):
        with pytest.raises(ValueError):
            amortization.calculate_emi(100000.0, Decimal('12'), 12)

    @pytest.mark.parametrize("principal,rate,months", [
        (Decimal('0'), Decimal('12'), 12),
        (Decimal('-100'), Decimal('12'), 12),
        (Decimal('100000'), Decimal('0'), 12),
        (Decimal('100000'), Decimal('12'), 0),
    ])
    def test_invalid_terms(self, principal, rate, months):
        with pytest.raises(InvalidInput):
            amortization.calculate_emi(principal, rate, months)

    def test_invalid_input_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            amortization.calculate_emi(Decimal('0'), Decimal('12'), 12)

    def test_emi_increases_with_rate(self):
        low = amortization.calculate_emi(Decimal('250000'), Decimal('8'), 60)
        high = amortization.calculate_emi(Decimal('250000'), Decimal('14'), 60)
        assert high > low

    def test_emi_decreases_with_tenure(self):
        short = amortization.calculate_emi(Decimal('250000'), Decimal('10'), 24)
        long = amortization.calculate_emi(Decimal('250000'), Decimal('10'), 120)
        assert long < short

    def test_emi_times_tenure_covers_principal(self):
        emi = amortization.calculate_emi(Decimal('750000'), Decimal('11.5'), 84)
        assert emi * 84 > Decimal('750000')

    def test_long_tenure_stays_exact(self):
        emi = amortization.calculate_emi(Decimal('10000000.00'), Decimal('25.00'), 360)
        assert emi == emi.quantize(Decimal('0.01'))
        # Interest-only floor: P * r
        assert emi > Decimal('10000000.00') * Decimal('25') / Decimal('1200')

    def test_principal_for_emi_inverts_emi(self):
        principal = amortization.principal_for_emi(Decimal('8884.88'), Decimal('12.00'), 12)
        assert abs(principal - Decimal('100000.00')) < Decimal('1.00')

    def test_principal_for_non_positive_emi(self):
        assert amortization.principal_for_emi(Decimal('0'), Decimal('12'), 12) == Decimal('0.00')
        assert amortization.principal_for_emi(Decimal('-5'), Decimal('12'), 12) == Decimal('0.00')


class TestTotals:
    """Test totals and per-period amounts"""

    def test_total_interest_and_amount(self):
        emi = Decimal('8884.88')
        assert amortization.calculate_total_amount(emi, 12) == Decimal('106618.56')
        assert amortization.calculate_total_interest(emi, 12, Decimal('100000.00')) == Decimal('6618.56')

    def test_period_interest_and_principal(self):
        interest = amortization.calculate_period_interest(Decimal('100000.00'), Decimal('12.00'))
        assert interest == Decimal('1000.00')
        assert amortization.calculate_period_principal(Decimal('8884.88'), interest) == Decimal('7884.88')

    def test_outstanding_after_payment(self):
        assert amortization.calculate_outstanding_after_payment(
            Decimal('100000.00'), Decimal('7884.88')
        ) == Decimal('92115.12')

    def test_monthly_rate(self):
        assert amortization.monthly_rate(Decimal('12')) == Decimal('0.0100000000')
        assert amortization.monthly_rate(Decimal('10')) == Decimal('0.0083333333')


class TestCharges:
    """Test prepayment and late payment charges"""

    def test_prepayment_charges(self):
        assert amortization.calculate_prepayment_charges(Decimal('100000.00'), Decimal('2')) == Decimal('2000.00')

    def test_late_penalty_uses_thirty_day_month(self):
        penalty = amortization.calculate_late_penalty(Decimal('8884.88'), Decimal('2'), 15)
        assert penalty == Decimal('88.85')

    def test_late_penalty_zero_days(self):
        assert amortization.calculate_late_penalty(Decimal('8884.88'), Decimal('2'), 0) == Decimal('0.00')


class TestRatios:
    """Test LTV and DTI ratios"""

    def test_ltv(self):
        assert amortization.calculate_ltv(Decimal('80000'), Decimal('100000')) == Decimal('80.00')
        assert amortization.calculate_ltv(Decimal('100000'), Decimal('150000')) == Decimal('66.67')

    def test_ltv_without_collateral(self):
        assert amortization.calculate_ltv(Decimal('80000'), Decimal('0')) == Decimal('0')

    def test_dti(self):
        assert amortization.calculate_dti(Decimal('5000'), Decimal('20000')) == Decimal('25.00')

    def test_dti_without_income(self):
        assert amortization.calculate_dti(Decimal('5000'), Decimal('0')) == Decimal('100.00')


class TestAddMonths:

    def test_simple(self):
        assert amortization.add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert amortization.add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_month_end_clamp(self):
        assert amortization.add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert amortization.add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert amortization.add_months(date(2024, 3, 31), 1) == date(2024, 4, 30)
