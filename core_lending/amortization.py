"""
Amortization Calculator Module

Pure reduce-balance loan arithmetic. Rates are annual percentages
(e.g. Decimal('9.00')). Monthly rates and powers are held at 10 decimal
places; every returned amount is rounded half-up to 2 decimal places.
"""

import calendar
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, getcontext, localcontext

from .exceptions import InvalidInput
from .logging_config import get_logger
from .money import HUNDRED, ZERO, NumberLike, quantize_money, quantize_rate, to_decimal


logger = get_logger("lending.amortization")

MONTHS_PER_YEAR_PERCENT = Decimal('1200')
PENALTY_DAYS_PER_MONTH = Decimal('30')
ONE = Decimal('1')


def _exact_context(months: int):
    """Decimal context wide enough to keep (1+r)^n exact before rounding"""
    ctx = getcontext().copy()
    ctx.prec = max(28, 11 * months + 40)
    return localcontext(ctx)


def monthly_rate(annual_rate_percent: NumberLike) -> Decimal:
    """annual / 1200, held at 10 decimal places"""
    return quantize_rate(to_decimal(annual_rate_percent) / MONTHS_PER_YEAR_PERCENT)


def _growth_factor(rate: Decimal, months: int) -> Decimal:
    """(1 + r)^n computed exactly, then rounded to 10 decimal places"""
    with _exact_context(months):
        power = (ONE + rate) ** months
    return quantize_rate(power)


def _validate_terms(principal: Decimal, annual_rate_percent: Decimal, months: int) -> None:
    if principal <= ZERO:
        raise InvalidInput("Principal must be positive")
    if annual_rate_percent <= ZERO:
        raise InvalidInput("Interest rate must be positive")
    if months is None or months <= 0:
        raise InvalidInput("Tenure must be positive")


def calculate_emi(principal: NumberLike, annual_rate_percent: NumberLike, months: int) -> Decimal:
    """
    Equated monthly installment using the reduce-balance formula

        EMI = P * r * (1+r)^n / ((1+r)^n - 1)

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent
        months: Tenure in months

    Returns:
        EMI rounded half-up to 2 decimal places

    Raises:
        InvalidInput: If principal, rate or months is not positive
    """
    principal = to_decimal(principal)
    annual_rate_percent = to_decimal(annual_rate_percent)
    _validate_terms(principal, annual_rate_percent, months)

    rate = monthly_rate(annual_rate_percent)
    power = _growth_factor(rate, months)

    with _exact_context(1):
        numerator = principal * rate * power
        denominator = power - ONE
        emi = (numerator / denominator).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    logger.debug(
        f"Calculated EMI {emi} for principal {principal}, rate {annual_rate_percent}%, "
        f"tenure {months} months"
    )
    return emi


def principal_for_emi(emi: NumberLike, annual_rate_percent: NumberLike, months: int) -> Decimal:
    """
    Inverse of calculate_emi: the principal an EMI can service

        P = EMI * ((1+r)^n - 1) / (r * (1+r)^n)

    Returns 0.00 for a non-positive EMI.
    """
    emi = to_decimal(emi)
    if emi <= ZERO:
        return ZERO
    annual_rate_percent = to_decimal(annual_rate_percent)
    _validate_terms(emi, annual_rate_percent, months)

    rate = monthly_rate(annual_rate_percent)
    power = _growth_factor(rate, months)

    with _exact_context(1):
        principal = (emi * (power - ONE)) / (rate * power)
        return principal.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


def calculate_total_interest(emi: NumberLike, months: int, principal: NumberLike) -> Decimal:
    """emi * months - principal"""
    return quantize_money(to_decimal(emi) * months - to_decimal(principal))


def calculate_total_amount(emi: NumberLike, months: int) -> Decimal:
    """emi * months"""
    return quantize_money(to_decimal(emi) * months)


def calculate_period_interest(outstanding_balance: NumberLike, annual_rate_percent: NumberLike) -> Decimal:
    """One month of interest on the outstanding balance"""
    return quantize_money(to_decimal(outstanding_balance) * monthly_rate(annual_rate_percent))


def calculate_period_principal(emi: NumberLike, period_interest: NumberLike) -> Decimal:
    return quantize_money(to_decimal(emi) - to_decimal(period_interest))


def calculate_prepayment_charges(outstanding_balance: NumberLike, charge_percent: NumberLike) -> Decimal:
    return quantize_money(to_decimal(outstanding_balance) * to_decimal(charge_percent) / HUNDRED)


def calculate_late_penalty(overdue_amount: NumberLike, penalty_rate_percent: NumberLike,
                           days_overdue: int) -> Decimal:
    """
    Penalty = overdue * rate% per month, pro-rated over a flat 30-day month

    The 30-day divisor applies regardless of calendar month length.
    """
    monthly_penalty = quantize_rate(to_decimal(overdue_amount) * to_decimal(penalty_rate_percent) / HUNDRED)
    daily_penalty = quantize_rate(monthly_penalty / PENALTY_DAYS_PER_MONTH)
    return quantize_money(daily_penalty * days_overdue)


def calculate_outstanding_after_payment(current_outstanding: NumberLike, principal_paid: NumberLike) -> Decimal:
    return quantize_money(to_decimal(current_outstanding) - to_decimal(principal_paid))


def calculate_ltv(loan_amount: NumberLike, collateral_value: NumberLike) -> Decimal:
    """Loan-to-value in percent; 0 when there is no collateral"""
    collateral_value = to_decimal(collateral_value)
    if collateral_value == ZERO:
        return ZERO
    return quantize_money(to_decimal(loan_amount) * HUNDRED / collateral_value)


def calculate_dti(total_emi: NumberLike, monthly_income: NumberLike) -> Decimal:
    """Debt-to-income in percent; 100 when income is 0"""
    monthly_income = to_decimal(monthly_income)
    if monthly_income == ZERO:
        return Decimal('100.00')
    return quantize_money(to_decimal(total_emi) * HUNDRED / monthly_income)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)
