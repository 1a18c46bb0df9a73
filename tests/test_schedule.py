"""
Test suite for repayment schedule module
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from core_lending import amortization
from core_lending.eligibility import LoanType
from core_lending.loans import Loan, LoanStatus
from core_lending.schedule import (
    RepaymentScheduleGenerator, ScheduleEntry, ScheduleStatus, schedule_key
)
from core_lending.storage import InMemoryStorage


def make_loan(principal=Decimal('100000.00'), rate=Decimal('12.00'), months=12,
              disbursed_on=date(2024, 1, 31)) -> Loan:
    now = datetime.now(timezone.utc)
    emi = amortization.calculate_emi(principal, rate, months)
    return Loan(
        id="loan-internal-1",
        created_at=now,
        updated_at=now,
        loan_id="L1700000000000001",
        customer_id="C1001",
        account_id="acct-1",
        account_number="ACC1001",
        branch_id="B1",
        loan_type=LoanType.PERSONAL,
        principal=principal,
        annual_interest_rate=rate,
        tenure_months=months,
        monthly_emi=emi,
        total_interest=amortization.calculate_total_interest(emi, months, principal),
        total_amount=amortization.calculate_total_amount(emi, months),
        outstanding_balance=principal,
        loan_status=LoanStatus.ACTIVE,
        actual_disbursement_date=disbursed_on
    )


class TestScheduleEntry:

    def test_amount_due_tracks_partial_payments(self):
        now = datetime.now(timezone.utc)
        entry = ScheduleEntry(
            id=schedule_key("x", 1), created_at=now, updated_at=now, loan_id="x",
            installment_number=1, due_date=date(2024, 2, 29),
            principal_amount=Decimal('7884.88'), interest_amount=Decimal('1000.00'),
            total_amount=Decimal('8884.88'), balance_after_payment=Decimal('92115.12')
        )
        assert entry.is_pending
        assert entry.amount_due == Decimal('8884.88')

        entry.amount_paid = Decimal('5000.00')
        assert entry.amount_due == Decimal('3884.88')

        entry.mark_paid(date(2024, 3, 1), "TXN1")
        assert entry.is_paid
        assert entry.payment_date == date(2024, 3, 1)
        assert entry.transaction_id == "TXN1"

    def test_schedule_key(self):
        assert schedule_key("abc", 7) == "abc_7"


class TestRepaymentScheduleGenerator:
    """Test schedule generation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.generator = RepaymentScheduleGenerator(self.storage)

    def test_generates_one_entry_per_month(self):
        entries = self.generator.generate(make_loan())

        assert len(entries) == 12
        assert [e.installment_number for e in entries] == list(range(1, 13))
        assert all(e.status == ScheduleStatus.PENDING for e in entries)
        assert entries[0].id == "loan-internal-1_1"

    def test_first_installment_split(self):
        first = self.generator.generate(make_loan())[0]

        assert first.interest_amount == Decimal('1000.00')
        assert first.principal_amount == Decimal('7884.88')
        assert first.total_amount == Decimal('8884.88')
        assert first.balance_after_payment == Decimal('92115.12')

    def test_principal_sums_to_loan_principal(self):
        for principal, rate, months in [
            (Decimal('100000.00'), Decimal('12.00'), 12),
            (Decimal('2500000.00'), Decimal('8.75'), 240),
            (Decimal('55555.55'), Decimal('19.99'), 7),
        ]:
            entries = self.generator.generate(make_loan(principal, rate, months))
            assert sum(e.principal_amount for e in entries) == principal
            assert entries[-1].balance_after_payment == Decimal('0.00')

    def test_last_installment_absorbs_residue(self):
        loan = make_loan()
        entries = self.generator.generate(loan)
        last = entries[-1]

        assert last.total_amount == last.principal_amount + last.interest_amount
        assert abs(last.total_amount - loan.monthly_emi) < Decimal('1.00')

    def test_due_dates_clamp_to_month_end(self):
        entries = self.generator.generate(make_loan(disbursed_on=date(2024, 1, 31)))

        assert entries[0].due_date == date(2024, 2, 29)
        assert entries[1].due_date == date(2024, 3, 31)
        assert entries[2].due_date == date(2024, 4, 30)

    def test_load_returns_installment_order(self):
        self.generator.generate(make_loan())
        loaded = self.generator.load("loan-internal-1")

        assert [e.installment_number for e in loaded] == list(range(1, 13))
        assert loaded[0].principal_amount == Decimal('7884.88')

    def test_regenerate_replaces_existing(self):
        loan = make_loan()
        self.generator.generate(loan)
        self.generator.generate(loan)

        assert len(self.generator.load(loan.id)) == 12

    def test_save_entry_persists_changes(self):
        entries = self.generator.generate(make_loan())
        entry = entries[0]
        entry.amount_paid = Decimal('100.00')
        entry.mark_paid(date(2024, 2, 29), "TXNABC")
        self.generator.save_entry(entry)

        reloaded = self.generator.load("loan-internal-1")[0]
        assert reloaded.status == ScheduleStatus.PAID
        assert reloaded.payment_date == date(2024, 2, 29)
        assert reloaded.amount_paid == Decimal('100.00')
        assert reloaded.transaction_id == "TXNABC"
