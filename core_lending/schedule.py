"""
Repayment Schedule Module

Materializes the monthly installment plan of a disbursed loan and persists
it, one record per installment, keyed "<loan id>_<installment number>".
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, TYPE_CHECKING
from enum import Enum

from . import amortization
from .logging_config import get_logger
from .money import ZERO, optional_decimal, quantize_money
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .loans import Loan


logger = get_logger("lending.schedule")


class ScheduleStatus(Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    WAIVED = "WAIVED"


@dataclass
class ScheduleEntry(StorageRecord):
    """One installment of a loan's repayment plan"""
    loan_id: str  # Internal id of the owning loan
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal
    balance_after_payment: Decimal
    status: ScheduleStatus = ScheduleStatus.PENDING
    payment_date: Optional[date] = None
    penalty_applied: Decimal = ZERO
    transaction_id: Optional[str] = None
    amount_paid: Decimal = ZERO  # Partial payments credited so far

    @property
    def amount_due(self) -> Decimal:
        return self.total_amount - self.amount_paid

    @property
    def is_pending(self) -> bool:
        return self.status == ScheduleStatus.PENDING

    @property
    def is_paid(self) -> bool:
        return self.status == ScheduleStatus.PAID

    def mark_paid(self, payment_date: date, transaction_id: Optional[str] = None) -> None:
        self.status = ScheduleStatus.PAID
        self.payment_date = payment_date
        if transaction_id:
            self.transaction_id = transaction_id


def schedule_key(loan_internal_id: str, installment_number: int) -> str:
    return f"{loan_internal_id}_{installment_number}"


class RepaymentScheduleGenerator:
    """
    Builds, loads and updates repayment schedules
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_repayment_schedules"

    def generate(self, loan: 'Loan') -> List[ScheduleEntry]:
        """
        Replace the loan's schedule with a freshly computed one

        Due dates are anchored on the actual disbursement date (today when
        absent). The final installment takes whatever principal remains, so
        the installment principals always sum to the loan principal.
        """
        self.delete_for_loan(loan.id)

        anchor = loan.actual_disbursement_date or date.today()
        remaining = loan.principal
        now = datetime.now(timezone.utc)
        entries = []

        for number in range(1, loan.tenure_months + 1):
            interest = amortization.calculate_period_interest(remaining, loan.annual_interest_rate)

            if number == loan.tenure_months:
                principal = remaining
                total = quantize_money(principal + interest)
            else:
                principal = amortization.calculate_period_principal(loan.monthly_emi, interest)
                total = loan.monthly_emi

            remaining = amortization.calculate_outstanding_after_payment(remaining, principal)

            entry = ScheduleEntry(
                id=schedule_key(loan.id, number),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=number,
                due_date=amortization.add_months(anchor, number),
                principal_amount=principal,
                interest_amount=interest,
                total_amount=total,
                balance_after_payment=remaining
            )
            self.save_entry(entry)
            entries.append(entry)

        logger.info(f"Generated {len(entries)} repayment installments for loan {loan.loan_id}")
        return entries

    def load(self, loan_internal_id: str) -> List[ScheduleEntry]:
        """All installments of a loan ordered by installment number"""
        rows = self.storage.find(self.table_name, {'loan_id': loan_internal_id})
        entries = [self._entry_from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.installment_number)
        return entries

    def save_entry(self, entry: ScheduleEntry) -> None:
        entry.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, entry.id, entry.to_dict())

    def delete_for_loan(self, loan_internal_id: str) -> int:
        rows = self.storage.find(self.table_name, {'loan_id': loan_internal_id})
        for row in rows:
            self.storage.delete(self.table_name, row['id'])
        return len(rows)

    def _entry_from_dict(self, data: Dict) -> ScheduleEntry:
        return ScheduleEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            total_amount=Decimal(data['total_amount']),
            balance_after_payment=Decimal(data['balance_after_payment']),
            status=ScheduleStatus(data['status']),
            payment_date=date.fromisoformat(data['payment_date']) if data.get('payment_date') else None,
            penalty_applied=optional_decimal(data.get('penalty_applied')) or ZERO,
            transaction_id=data.get('transaction_id'),
            amount_paid=optional_decimal(data.get('amount_paid')) or ZERO
        )
