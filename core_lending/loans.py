"""
Loan Lifecycle Module

Loan records, their repository, and the lifecycle state machine:

    APPLICATION(PENDING) --approve-->  APPROVED(APPROVED) --disburse--> ACTIVE
    APPLICATION(PENDING) --reject-->   APPLICATION(REJECTED)
    ACTIVE --repay(full)--> CLOSED
    ACTIVE --foreclose-->   CLOSED
    ACTIVE --default sweep--> DEFAULTED

Every mutation runs as one unit of work: take the loan's exclusive lock,
load a fresh projection, authorize, validate the transition, move money,
then mutate and persist inside a storage transaction.
"""

import json
import math
import random
import time
from contextlib import contextmanager
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
from enum import Enum
import uuid

from . import amortization
from .audit import AuditTrail, AuditEventType
from .auth import AuthContext, BranchAuthorization, Role
from .config import LendingConfig, get_config
from .directory import Account, AccountDirectory, Branch, BranchDirectory, CustomerDirectory
from .eligibility import (
    ApplicantType, EligibilityEvaluator, EligibilityResult, LoanApplication, LoanType
)
from .exceptions import (
    AccountNotFound, AlreadyDisbursed, CustomerNotFound, EligibilityRejected,
    InvalidLoanState, LoanNotFound, UnauthorizedAccess, ValidationError
)
from .logging_config import get_logger, log_action
from .money import ZERO, optional_decimal, quantize_money, to_decimal
from .schedule import RepaymentScheduleGenerator, ScheduleEntry
from .storage import RecordLockRegistry, StorageInterface, StorageRecord
from .transactions import TransactionProcessor, TransactionResult


logger = get_logger("lending.loans")

DEFAULT_REPAYMENT_MODE = "TRANSFER"


class LoanStatus(Enum):
    APPLICATION = "APPLICATION"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    DEFAULTED = "DEFAULTED"


class ApprovalStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DisbursementStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ApprovalStage(Enum):
    APPLICATION_REVIEW = "APPLICATION_REVIEW"
    CREDIT_CHECK = "CREDIT_CHECK"
    FINAL_APPROVAL = "FINAL_APPROVAL"


@dataclass
class Loan(StorageRecord):
    """
    Loan record. `id` is the internal storage key, `loan_id` the external
    identifier shown to customers and staff.
    """
    loan_id: str
    customer_id: str
    account_id: str
    account_number: str
    branch_id: Optional[str]
    loan_type: LoanType
    principal: Decimal
    annual_interest_rate: Decimal
    tenure_months: int
    monthly_emi: Decimal
    total_interest: Decimal
    total_amount: Decimal
    outstanding_balance: Decimal
    applicant_type: ApplicantType = ApplicantType.INDIVIDUAL
    loan_status: LoanStatus = LoanStatus.APPLICATION
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    disbursement_status: DisbursementStatus = DisbursementStatus.PENDING
    disbursed_amount: Decimal = ZERO
    approved_amount: Optional[Decimal] = None

    # Dates
    application_date: Optional[date] = None
    approved_date: Optional[date] = None
    actual_disbursement_date: Optional[date] = None
    closed_date: Optional[date] = None

    # Decision data
    eligibility_score: Optional[int] = None
    risk_rating: Optional[str] = None
    approval_conditions: Optional[str] = None
    rejection_reason: Optional[str] = None
    remarks: Optional[str] = None
    approved_by: Optional[str] = None

    # Type-specific data
    purpose: Optional[str] = None
    collateral_type: Optional[str] = None
    collateral_value: Optional[Decimal] = None
    collateral_description: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.loan_status == LoanStatus.ACTIVE

    def to_summary(self) -> Dict[str, Any]:
        """JSON-ready view of the loan"""
        def money(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        def day(value: Optional[date]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'account_number': self.account_number,
            'branch_id': self.branch_id,
            'loan_type': self.loan_type.value,
            'applicant_type': self.applicant_type.value,
            'loan_status': self.loan_status.value,
            'approval_status': self.approval_status.value,
            'disbursement_status': self.disbursement_status.value,
            'principal': money(self.principal),
            'annual_interest_rate': money(self.annual_interest_rate),
            'tenure_months': self.tenure_months,
            'monthly_emi': money(self.monthly_emi),
            'total_interest': money(self.total_interest),
            'total_amount': money(self.total_amount),
            'outstanding_balance': money(self.outstanding_balance),
            'disbursed_amount': money(self.disbursed_amount),
            'approved_amount': money(self.approved_amount),
            'application_date': day(self.application_date),
            'approved_date': day(self.approved_date),
            'actual_disbursement_date': day(self.actual_disbursement_date),
            'closed_date': day(self.closed_date),
            'eligibility_score': self.eligibility_score,
            'risk_rating': self.risk_rating,
            'approval_conditions': self.approval_conditions,
            'rejection_reason': self.rejection_reason,
            'remarks': self.remarks,
            'approved_by': self.approved_by,
            'purpose': self.purpose,
            'collateral_type': self.collateral_type,
            'collateral_value': money(self.collateral_value),
            'collateral_description': self.collateral_description,
            'details': {k: str(v) if isinstance(v, Decimal) else v for k, v in self.details.items()}
        }


@dataclass
class ApprovalHistoryEntry(StorageRecord):
    """Append-only record of an application decision"""
    loan_id: str  # Internal loan id
    decision: ApprovalStatus
    stage: ApprovalStage
    action_by: str
    action_date: datetime
    comments: Optional[str] = None
    approval_conditions: Optional[str] = None

    def to_summary(self) -> Dict[str, Any]:
        return {
            'decision': self.decision.value,
            'stage': self.stage.value,
            'action_by': self.action_by,
            'action_date': self.action_date.isoformat(),
            'comments': self.comments,
            'approval_conditions': self.approval_conditions
        }


@dataclass
class DisbursementRecord(StorageRecord):
    """Completed payout of loan funds"""
    loan_id: str  # Internal loan id
    disbursement_date: date
    amount: Decimal
    account_number: str
    transaction_id: str
    status: DisbursementStatus
    reference: str

    def to_summary(self) -> Dict[str, Any]:
        return {
            'disbursement_date': self.disbursement_date.isoformat(),
            'amount': str(self.amount),
            'account_number': self.account_number,
            'transaction_id': self.transaction_id,
            'status': self.status.value,
            'reference': self.reference
        }


@dataclass
class LoanView:
    """
    Consistent snapshot of a loan with its linked account and that
    account's branch, loaded once at the start of an operation
    """
    loan: Loan
    account: Optional[Account] = None
    branch: Optional[Branch] = None

    @property
    def loan_id(self) -> str:
        return self.loan.loan_id

    @property
    def customer_id(self) -> str:
        return self.loan.customer_id

    @property
    def branch_id(self) -> Optional[str]:
        if self.account is not None:
            return self.account.branch_id
        return self.loan.branch_id


@dataclass
class LoanSearchCriteria:
    customer_id: Optional[str] = None
    loan_status: Optional[LoanStatus] = None
    loan_type: Optional[LoanType] = None
    page_number: int = 0
    page_size: Optional[int] = None

    def matches(self, loan: Loan) -> bool:
        if self.customer_id and loan.customer_id != self.customer_id:
            return False
        if self.loan_status and loan.loan_status != self.loan_status:
            return False
        if self.loan_type and loan.loan_type != self.loan_type:
            return False
        return True


@dataclass
class LoanPage:
    loans: List[Loan]
    total_count: int
    page_number: int
    page_size: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loans': [loan.to_summary() for loan in self.loans],
            'total_count': self.total_count,
            'page_number': self.page_number,
            'page_size': self.page_size,
            'total_pages': self.total_pages
        }


@dataclass
class LoanStatement:
    """Read model aggregating a loan's repayment position"""
    loan: Loan
    total_amount: Decimal
    total_paid: Decimal
    installments_paid: int
    installments_pending: int
    next_emi_date: Optional[date]
    next_emi_amount: Optional[Decimal]
    schedule: List[ScheduleEntry]
    disbursement_history: List[Dict[str, Any]]
    approval_history: List[ApprovalHistoryEntry]
    customer_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan': self.loan.to_summary(),
            'customer_name': self.customer_name,
            'total_amount': str(self.total_amount),
            'total_paid': str(self.total_paid),
            'outstanding_balance': str(self.loan.outstanding_balance),
            'installments_paid': self.installments_paid,
            'installments_pending': self.installments_pending,
            'next_emi_date': self.next_emi_date.isoformat() if self.next_emi_date else None,
            'next_emi_amount': str(self.next_emi_amount) if self.next_emi_amount is not None else None,
            'repayment_schedule': [
                {
                    'installment_number': e.installment_number,
                    'due_date': e.due_date.isoformat(),
                    'payment_date': e.payment_date.isoformat() if e.payment_date else None,
                    'principal_amount': str(e.principal_amount),
                    'interest_amount': str(e.interest_amount),
                    'total_amount': str(e.total_amount),
                    'balance_after_payment': str(e.balance_after_payment),
                    'status': e.status.value,
                    'penalty_applied': str(e.penalty_applied),
                    'transaction_id': e.transaction_id
                }
                for e in self.schedule
            ],
            'disbursement_history': list(self.disbursement_history),
            'approval_history': [h.to_summary() for h in self.approval_history]
        }


def generate_loan_id() -> str:
    """"L" + millisecond timestamp + 3-digit random suffix"""
    return f"L{int(time.time() * 1000)}{random.randint(0, 999):03d}"


class LoanRepository:
    """
    Persistence for loans, approval history and disbursement records,
    plus the loan-scoped exclusive lock
    """

    def __init__(self, storage: StorageInterface, locks: Optional[RecordLockRegistry] = None,
                 lock_timeout: Optional[float] = None):
        self.storage = storage
        self.locks = locks or RecordLockRegistry(
            timeout=lock_timeout if lock_timeout is not None else get_config().lock_timeout_seconds
        )
        self.loans_table = "loans"
        self.history_table = "loan_approval_history"
        self.disbursements_table = "loan_disbursements"

    # Loans

    def save(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def get(self, internal_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, internal_id)
        return self._loan_from_dict(data) if data else None

    def find_by_loan_id(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.find_one(self.loans_table, {'loan_id': loan_id})
        return self._loan_from_dict(data) if data else None

    def exists(self, loan_id: str) -> bool:
        return self.find_by_loan_id(loan_id) is not None

    def find_all(self) -> List[Loan]:
        loans = [self._loan_from_dict(d) for d in self.storage.load_all(self.loans_table)]
        loans.sort(key=lambda l: (l.created_at, l.loan_id))
        return loans

    def find_by_status(self, status: LoanStatus) -> List[Loan]:
        return [l for l in self.find_all() if l.loan_status == status]

    def find_by_approval_status(self, status: ApprovalStatus) -> List[Loan]:
        return [l for l in self.find_all() if l.approval_status == status]

    def find_by_customer(self, customer_id: str) -> List[Loan]:
        return [l for l in self.find_all() if l.customer_id == customer_id]

    def find_by_customer_and_status(self, customer_id: str, status: LoanStatus) -> List[Loan]:
        return [l for l in self.find_by_customer(customer_id) if l.loan_status == status]

    def total_active_emi(self, customer_id: str) -> Decimal:
        """Sum of monthly EMIs of the customer's ACTIVE loans"""
        return sum(
            (l.monthly_emi for l in self.find_by_customer_and_status(customer_id, LoanStatus.ACTIVE)),
            ZERO
        )

    def has_defaulted_loans(self, customer_id: str) -> bool:
        return bool(self.find_by_customer_and_status(customer_id, LoanStatus.DEFAULTED))

    @contextmanager
    def lock(self, loan_id: str) -> Iterator[Loan]:
        """
        Hold the loan's exclusive lock and yield a freshly loaded copy

        Raises:
            LoanNotFound: If no loan has this external id
            ConcurrencyConflict: If the lock is not acquired in time
        """
        loan = self.find_by_loan_id(loan_id)
        if not loan:
            raise LoanNotFound(f"Loan not found: {loan_id}")
        with self.locks.hold(self.loans_table, loan.id):
            yield self.get(loan.id)

    # Approval history

    def add_history(self, entry: ApprovalHistoryEntry) -> None:
        self.storage.save(self.history_table, entry.id, self._history_to_dict(entry))

    def history_for(self, internal_id: str) -> List[ApprovalHistoryEntry]:
        rows = self.storage.find(self.history_table, {'loan_id': internal_id})
        entries = [self._history_from_dict(r) for r in rows]
        entries.sort(key=lambda e: e.action_date)
        return entries

    # Disbursements

    def add_disbursement(self, record: DisbursementRecord) -> None:
        self.storage.save(self.disbursements_table, record.id, record.to_dict())

    def disbursements_for(self, internal_id: str) -> List[DisbursementRecord]:
        rows = self.storage.find(self.disbursements_table, {'loan_id': internal_id})
        records = [
            DisbursementRecord(
                id=r['id'],
                created_at=datetime.fromisoformat(r['created_at']),
                updated_at=datetime.fromisoformat(r['updated_at']),
                loan_id=r['loan_id'],
                disbursement_date=date.fromisoformat(r['disbursement_date']),
                amount=Decimal(r['amount']),
                account_number=r['account_number'],
                transaction_id=r['transaction_id'],
                status=DisbursementStatus(r['status']),
                reference=r['reference']
            )
            for r in rows
        ]
        records.sort(key=lambda r: r.created_at)
        return records

    # Mapping

    def _loan_to_dict(self, loan: Loan) -> Dict:
        result = loan.to_dict()
        result['details'] = json.loads(json.dumps(loan.details, default=str))
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        def get_date(name: str) -> Optional[date]:
            if data.get(name):
                return date.fromisoformat(data[name])
            return None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            account_id=data['account_id'],
            account_number=data['account_number'],
            branch_id=data.get('branch_id'),
            loan_type=LoanType(data['loan_type']),
            principal=Decimal(data['principal']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            tenure_months=data['tenure_months'],
            monthly_emi=Decimal(data['monthly_emi']),
            total_interest=Decimal(data['total_interest']),
            total_amount=Decimal(data['total_amount']),
            outstanding_balance=Decimal(data['outstanding_balance']),
            applicant_type=ApplicantType(data.get('applicant_type', 'INDIVIDUAL')),
            loan_status=LoanStatus(data['loan_status']),
            approval_status=ApprovalStatus(data['approval_status']),
            disbursement_status=DisbursementStatus(data['disbursement_status']),
            disbursed_amount=Decimal(data.get('disbursed_amount') or '0.00'),
            approved_amount=optional_decimal(data.get('approved_amount')),
            application_date=get_date('application_date'),
            approved_date=get_date('approved_date'),
            actual_disbursement_date=get_date('actual_disbursement_date'),
            closed_date=get_date('closed_date'),
            eligibility_score=data.get('eligibility_score'),
            risk_rating=data.get('risk_rating'),
            approval_conditions=data.get('approval_conditions'),
            rejection_reason=data.get('rejection_reason'),
            remarks=data.get('remarks'),
            approved_by=data.get('approved_by'),
            purpose=data.get('purpose'),
            collateral_type=data.get('collateral_type'),
            collateral_value=optional_decimal(data.get('collateral_value')),
            collateral_description=data.get('collateral_description'),
            details=data.get('details') or {}
        )

    def _history_to_dict(self, entry: ApprovalHistoryEntry) -> Dict:
        result = entry.to_dict()
        result['action_date'] = entry.action_date.isoformat()
        return result

    def _history_from_dict(self, data: Dict) -> ApprovalHistoryEntry:
        return ApprovalHistoryEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            decision=ApprovalStatus(data['decision']),
            stage=ApprovalStage(data['stage']),
            action_by=data['action_by'],
            action_date=datetime.fromisoformat(data['action_date']),
            comments=data.get('comments'),
            approval_conditions=data.get('approval_conditions')
        )


class LoanLifecycle:
    """
    Loan application, approval, disbursement, repayment and foreclosure,
    plus the authorized read queries over loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        customers: CustomerDirectory,
        accounts: AccountDirectory,
        branches: BranchDirectory,
        transactions: TransactionProcessor,
        audit_trail: AuditTrail,
        authorization: Optional[BranchAuthorization] = None,
        repository: Optional[LoanRepository] = None,
        cfg: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.customers = customers
        self.accounts = accounts
        self.branches = branches
        self.transactions = transactions
        self.audit_trail = audit_trail
        self.authorization = authorization or BranchAuthorization()
        self.cfg = cfg or get_config()
        self.repository = repository or LoanRepository(storage, lock_timeout=self.cfg.lock_timeout_seconds)
        self.schedule = RepaymentScheduleGenerator(storage)
        self.evaluator = EligibilityEvaluator(customers, accounts, self.repository, self.cfg)

    # Eligibility and application

    def check_eligibility(self, application: LoanApplication,
                          auth: Optional[AuthContext] = None) -> EligibilityResult:
        """Validate and score an application without persisting anything"""
        application.validate(self.cfg)
        if auth is not None and auth.role == Role.CUSTOMER and auth.customer_id != application.customer_id:
            self._deny(auth, "check eligibility", application.customer_id)
            raise UnauthorizedAccess("Customers can only check their own eligibility")
        return self.evaluator.check_eligibility(application)

    def apply(self, application: LoanApplication, auth: AuthContext) -> Loan:
        """
        Submit a loan application

        Raises:
            ValidationError: If request fields are out of range
            CustomerNotFound / AccountNotFound: If the parties do not exist
            InvalidLoanState: If the customer is not active
            EligibilityRejected: If any eligibility rule fails
        """
        application.validate(self.cfg)

        if auth.role == Role.CUSTOMER and auth.customer_id != application.customer_id:
            self._deny(auth, "apply", application.customer_id)
            raise UnauthorizedAccess("Customers can only apply for their own loans")

        customer = self.customers.find_by_customer_id(application.customer_id)
        if not customer:
            raise CustomerNotFound(f"Customer not found: {application.customer_id}")
        if not customer.is_active:
            raise InvalidLoanState("Cannot apply for loan with inactive customer account")

        account = self.accounts.find_by_account_number(application.account_number)
        if not account:
            raise AccountNotFound(f"Account not found: {application.account_number}")

        eligibility = self.evaluator.check_eligibility(application)
        if not eligibility.is_eligible:
            log_action(
                logger, "info", "Loan application rejected by eligibility rules",
                user_id=auth.username, action="loan.apply", resource=application.customer_id,
                extra={"score": eligibility.score, "reasons": eligibility.reasons}
            )
            raise EligibilityRejected(
                "Loan application rejected due to eligibility criteria",
                reasons=eligibility.reasons
            )

        principal = quantize_money(application.loan_amount)
        emi = amortization.calculate_emi(
            principal, application.annual_interest_rate, application.tenure_months
        )
        now = datetime.now(timezone.utc)

        loan_id = generate_loan_id()
        while self.repository.exists(loan_id):
            loan_id = generate_loan_id()

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            customer_id=customer.customer_id,
            account_id=account.id,
            account_number=account.account_number,
            branch_id=account.branch_id,
            loan_type=application.loan_type,
            applicant_type=application.applicant_type,
            principal=principal,
            annual_interest_rate=application.annual_interest_rate,
            tenure_months=application.tenure_months,
            monthly_emi=emi,
            total_interest=amortization.calculate_total_interest(
                emi, application.tenure_months, principal
            ),
            total_amount=amortization.calculate_total_amount(emi, application.tenure_months),
            outstanding_balance=principal,
            application_date=date.today(),
            eligibility_score=eligibility.score,
            risk_rating=eligibility.risk_rating.value,
            purpose=application.purpose,
            collateral_type=application.collateral_type,
            collateral_value=application.collateral_value,
            collateral_description=application.collateral_description,
            details=dict(application.details)
        )

        with self.storage.atomic():
            self.repository.save(loan)
            self._record_history(
                loan, ApprovalStatus.PENDING, ApprovalStage.APPLICATION_REVIEW,
                "Loan application submitted", None, auth
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={
                    "customer_id": loan.customer_id,
                    "loan_type": loan.loan_type.value,
                    "principal": loan.principal,
                    "annual_interest_rate": loan.annual_interest_rate,
                    "tenure_months": loan.tenure_months,
                    "monthly_emi": loan.monthly_emi,
                    "eligibility_score": loan.eligibility_score
                },
                user_id=auth.username
            )

        log_action(
            logger, "info", f"Loan {loan.loan_id} applied",
            user_id=auth.username, action="loan.apply", resource=loan.loan_id,
            extra={"customer_id": loan.customer_id, "principal": str(loan.principal)}
        )
        return loan

    # Decisions

    def approve(self, loan_id: str, conditions: Optional[str], comments: Optional[str],
                auth: AuthContext, interest_rate: Optional[Decimal] = None) -> Loan:
        """
        Approve a pending application, optionally at a modified interest rate
        """
        if interest_rate is not None:
            interest_rate = to_decimal(interest_rate)
            min_rate = Decimal(self.cfg.min_interest_rate)
            max_rate = Decimal(self.cfg.max_interest_rate)
            if interest_rate < min_rate or interest_rate > max_rate:
                raise ValidationError(f"Interest rate must be between {min_rate}% and {max_rate}%")

        with self._unit_of_work(loan_id, auth, "approve") as view:
            loan = view.loan
            if loan.approval_status != ApprovalStatus.PENDING:
                raise InvalidLoanState(
                    f"Loan {loan_id} cannot be approved: approval status is {loan.approval_status.value}"
                )

            if interest_rate is not None and interest_rate != loan.annual_interest_rate:
                loan.annual_interest_rate = interest_rate
                loan.monthly_emi = amortization.calculate_emi(loan.principal, interest_rate, loan.tenure_months)
                loan.total_interest = amortization.calculate_total_interest(
                    loan.monthly_emi, loan.tenure_months, loan.principal
                )
                loan.total_amount = amortization.calculate_total_amount(loan.monthly_emi, loan.tenure_months)

            loan.approval_status = ApprovalStatus.APPROVED
            loan.loan_status = LoanStatus.APPROVED
            loan.approved_date = date.today()
            loan.approved_amount = loan.principal
            loan.approval_conditions = conditions
            loan.approved_by = auth.username
            self.repository.save(loan)

            self._record_history(loan, ApprovalStatus.APPROVED, ApprovalStage.FINAL_APPROVAL,
                                 comments, conditions, auth)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={
                    "approved_amount": loan.approved_amount,
                    "annual_interest_rate": loan.annual_interest_rate,
                    "monthly_emi": loan.monthly_emi,
                    "conditions": conditions
                },
                user_id=auth.username
            )

        log_action(logger, "info", f"Loan {loan_id} approved",
                   user_id=auth.username, action="loan.approve", resource=loan_id)
        return loan

    def reject(self, loan_id: str, reason: str, comments: Optional[str], auth: AuthContext) -> Loan:
        """Reject a pending application; the loan stays in APPLICATION"""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        with self._unit_of_work(loan_id, auth, "reject") as view:
            loan = view.loan
            if loan.approval_status != ApprovalStatus.PENDING:
                raise InvalidLoanState(
                    f"Loan {loan_id} cannot be rejected: approval status is {loan.approval_status.value}"
                )

            loan.approval_status = ApprovalStatus.REJECTED
            loan.loan_status = LoanStatus.APPLICATION
            loan.rejection_reason = reason
            self.repository.save(loan)

            self._record_history(loan, ApprovalStatus.REJECTED, ApprovalStage.FINAL_APPROVAL,
                                 comments, None, auth)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={"reason": reason},
                user_id=auth.username
            )

        log_action(logger, "info", f"Loan {loan_id} rejected",
                   user_id=auth.username, action="loan.reject", resource=loan_id,
                   extra={"reason": reason})
        return loan

    # Money movement

    def disburse(self, loan_id: str, account_number: Optional[str], amount: Optional[Decimal],
                 auth: AuthContext) -> Loan:
        """
        Pay out an approved loan and materialize its repayment schedule

        Defaults to the loan's own account and the full approved amount.

        Raises:
            AlreadyDisbursed: If the disbursement already completed
            InvalidLoanState: If the loan is not APPROVED
        """
        with self._unit_of_work(loan_id, auth, "disburse") as view:
            loan = view.loan
            if loan.disbursement_status == DisbursementStatus.COMPLETED:
                raise AlreadyDisbursed(f"Loan {loan_id} has already been disbursed")
            if loan.loan_status != LoanStatus.APPROVED:
                raise InvalidLoanState(
                    f"Loan {loan_id} must be approved before disbursement (status {loan.loan_status.value})"
                )

            approved_amount = loan.approved_amount if loan.approved_amount is not None else loan.principal
            amount = quantize_money(to_decimal(amount)) if amount is not None else approved_amount
            if amount <= ZERO:
                raise ValidationError("Disbursement amount must be positive")
            if amount > approved_amount:
                raise ValidationError(
                    f"Disbursement amount {amount} exceeds approved amount {approved_amount}"
                )

            target = account_number or loan.account_number
            if not self.accounts.find_by_account_number(target):
                raise AccountNotFound(f"Account not found: {target}")

            result = self.transactions.deposit(
                target, amount, self.cfg.default_disbursement_mode,
                f"Loan Disbursement: {loan.loan_id}", auth
            )

            loan.disbursed_amount = loan.disbursed_amount + amount
            loan.disbursement_status = DisbursementStatus.COMPLETED
            loan.loan_status = LoanStatus.ACTIVE
            loan.actual_disbursement_date = date.today()
            self.repository.save(loan)

            entries = self.schedule.generate(loan)

            now = datetime.now(timezone.utc)
            self.repository.add_disbursement(DisbursementRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                disbursement_date=loan.actual_disbursement_date,
                amount=amount,
                account_number=target,
                transaction_id=result.transaction_id,
                status=DisbursementStatus.COMPLETED,
                reference=f"DISB-{loan.loan_id}"
            ))
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={
                    "amount": amount,
                    "account_number": target,
                    "transaction_id": result.transaction_id,
                    "installments": len(entries)
                },
                user_id=auth.username
            )

        log_action(logger, "info", f"Loan {loan_id} disbursed",
                   user_id=auth.username, action="loan.disburse", resource=loan_id,
                   extra={"amount": str(amount), "transaction_id": result.transaction_id})
        return loan

    def repay(self, loan_id: str, amount: Decimal, payment_date: Optional[date],
              mode: Optional[str], auth: AuthContext) -> TransactionResult:
        """
        Collect a repayment from the loan's account

        The payment settles pending installments in order. A fully covered
        installment becomes PAID and its principal leaves the outstanding
        balance; a remainder too small for the next installment is credited
        to it without marking it paid. The loan closes when the outstanding
        balance reaches exactly zero, i.e. once every installment is fully
        paid. The last installment absorbs the rounding of the EMI, so paying
        the EMI every month can leave a small residual on it; that residual
        has to be repaid before the loan closes.
        """
        amount = quantize_money(to_decimal(amount))
        if amount <= ZERO:
            raise ValidationError("Repayment amount must be positive")
        payment_date = payment_date or date.today()

        with self._unit_of_work(loan_id, auth, "repay") as view:
            loan = view.loan
            if loan.loan_status != LoanStatus.ACTIVE:
                raise InvalidLoanState(f"Cannot repay loan with status: {loan.loan_status.value}")

            pending = [e for e in self.schedule.load(loan.id) if e.is_pending]
            payable = sum((e.amount_due for e in pending), ZERO) if pending else loan.outstanding_balance
            if amount > payable:
                raise ValidationError("Repayment amount exceeds outstanding balance")

            result = self.transactions.withdraw(
                loan.account_number, amount, mode or DEFAULT_REPAYMENT_MODE,
                f"Loan Repayment: {loan.loan_id}", auth
            )

            principal_repaid = ZERO if pending else amount
            remaining = amount
            for entry in pending:
                if remaining <= ZERO:
                    break
                if remaining >= entry.amount_due:
                    remaining -= entry.amount_due
                    entry.amount_paid = entry.total_amount
                    entry.mark_paid(payment_date, result.transaction_id)
                    principal_repaid += entry.principal_amount
                else:
                    entry.amount_paid = entry.amount_paid + remaining
                    entry.transaction_id = result.transaction_id
                    remaining = ZERO
                self.schedule.save_entry(entry)

            loan.outstanding_balance = amortization.calculate_outstanding_after_payment(
                loan.outstanding_balance, principal_repaid
            )
            closed = loan.outstanding_balance == ZERO
            if closed:
                loan.loan_status = LoanStatus.CLOSED
                loan.closed_date = payment_date
            self.repository.save(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REPAYMENT,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={
                    "amount": amount,
                    "principal_repaid": principal_repaid,
                    "outstanding_balance": loan.outstanding_balance,
                    "transaction_id": result.transaction_id
                },
                user_id=auth.username
            )
            if closed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_CLOSED,
                    entity_type="loan",
                    entity_id=loan.loan_id,
                    metadata={"closed_date": loan.closed_date},
                    user_id=auth.username
                )

        log_action(logger, "info", f"Repayment of {amount} on loan {loan_id}",
                   user_id=auth.username, action="loan.repay", resource=loan_id,
                   extra={"outstanding_balance": str(loan.outstanding_balance), "closed": closed})
        return result

    def foreclose(self, loan_id: str, settlement_account_number: Optional[str],
                  foreclosure_date: Optional[date], auth: AuthContext) -> Loan:
        """
        Settle the whole outstanding balance early

        Principal already covered by partial payments on pending installments
        is deducted from the settlement amount. No prepayment charge is added.
        """
        foreclosure_date = foreclosure_date or date.today()

        with self._unit_of_work(loan_id, auth, "foreclose") as view:
            loan = view.loan
            if loan.loan_status != LoanStatus.ACTIVE:
                raise InvalidLoanState(f"Cannot foreclose loan with status: {loan.loan_status.value}")

            settlement_number = settlement_account_number or loan.account_number
            settlement = self.accounts.find_by_account_number(settlement_number)
            if not settlement:
                raise AccountNotFound(f"Account not found: {settlement_number}")
            if settlement.customer_id != loan.customer_id:
                raise ValidationError("Settlement account must belong to the loan's customer")

            pending = [e for e in self.schedule.load(loan.id) if e.is_pending]
            credited_principal = quantize_money(sum(
                (max(ZERO, e.amount_paid - e.interest_amount) for e in pending), ZERO
            ))
            foreclosure_amount = max(ZERO, quantize_money(loan.outstanding_balance - credited_principal))
            transaction_id = None
            if foreclosure_amount > ZERO:
                result = self.transactions.withdraw(
                    settlement_number, foreclosure_amount, self.cfg.default_foreclosure_mode,
                    f"Loan Foreclosure: {loan.loan_id}", auth
                )
                transaction_id = result.transaction_id

            for entry in pending:
                entry.mark_paid(foreclosure_date, transaction_id)
                self.schedule.save_entry(entry)

            loan.outstanding_balance = ZERO
            loan.loan_status = LoanStatus.CLOSED
            loan.closed_date = foreclosure_date
            loan.remarks = (
                f"Loan foreclosed on {foreclosure_date.isoformat()}. "
                f"Foreclosure amount: {foreclosure_amount}"
            )
            self.repository.save(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_FORECLOSED,
                entity_type="loan",
                entity_id=loan.loan_id,
                metadata={
                    "foreclosure_amount": foreclosure_amount,
                    "credited_principal": credited_principal,
                    "settlement_account": settlement_number,
                    "foreclosure_date": foreclosure_date,
                    "transaction_id": transaction_id
                },
                user_id=auth.username
            )

        log_action(logger, "info", f"Loan {loan_id} foreclosed",
                   user_id=auth.username, action="loan.foreclose", resource=loan_id,
                   extra={"amount": str(foreclosure_amount)})
        return loan

    # Queries

    def get_loan_by_id(self, loan_id: str, auth: AuthContext) -> Loan:
        view = self._load_view(loan_id)
        self._authorize(auth, view, "view")
        return view.loan

    def get_approval_history(self, loan_id: str, auth: AuthContext) -> List[ApprovalHistoryEntry]:
        view = self._load_view(loan_id)
        self._authorize(auth, view, "view")
        return self.repository.history_for(view.loan.id)

    def get_statement(self, loan_id: str, auth: AuthContext) -> LoanStatement:
        """Repayment position, full schedule and disbursement history of a loan"""
        view = self._load_view(loan_id)
        self._authorize(auth, view, "view statement of")
        loan = view.loan

        schedule = self.schedule.load(loan.id)
        paid = [e for e in schedule if e.is_paid]
        next_entry = next((e for e in schedule if e.is_pending), None)
        customer = self.customers.find_by_customer_id(loan.customer_id)

        return LoanStatement(
            loan=loan,
            customer_name=customer.full_name if customer else None,
            total_amount=amortization.calculate_total_amount(loan.monthly_emi, loan.tenure_months),
            total_paid=quantize_money(sum((e.total_amount for e in paid), ZERO)),
            installments_paid=len(paid),
            installments_pending=len(schedule) - len(paid),
            next_emi_date=next_entry.due_date if next_entry else None,
            next_emi_amount=next_entry.total_amount if next_entry else None,
            schedule=schedule,
            disbursement_history=self._disbursement_history(loan),
            approval_history=self.repository.history_for(loan.id)
        )

    def search_loans(self, criteria: LoanSearchCriteria, auth: AuthContext) -> LoanPage:
        """Role-filtered search with 0-based pagination"""
        page_size = criteria.page_size or self.cfg.default_page_size
        if page_size <= 0 or criteria.page_number < 0:
            raise ValidationError("Page number must be >= 0 and page size > 0")

        self._require_listing_role(auth, "search", allow_customer=True)
        matches = [l for l in self._accessible(self.repository.find_all(), auth) if criteria.matches(l)]
        return self._page(matches, criteria.page_number, page_size, criteria.page_number)

    def list_loans(self, page_number: int, page_size: Optional[int], auth: AuthContext) -> LoanPage:
        """Role-filtered listing with 1-based pagination"""
        page_size = page_size or self.cfg.default_page_size
        if page_number < 1 or page_size <= 0:
            raise ValidationError("Page number must be >= 1 and page size > 0")

        self._require_listing_role(auth, "list", allow_customer=True)
        loans = self._accessible(self.repository.find_all(), auth)
        return self._page(loans, page_number - 1, page_size, page_number)

    def get_loans_by_customer(self, customer_id: str, auth: AuthContext) -> List[Loan]:
        if not self.customers.find_by_customer_id(customer_id):
            raise CustomerNotFound(f"Customer not found: {customer_id}")
        if auth.role == Role.CUSTOMER and auth.customer_id != customer_id:
            self._deny(auth, "list loans of customer", customer_id)
            raise UnauthorizedAccess("You can only view your own loans")
        return self._accessible(self.repository.find_by_customer(customer_id), auth)

    def get_pending_approvals(self, auth: AuthContext) -> List[Loan]:
        self._require_listing_role(auth, "view pending approvals", allow_customer=False)
        pending = self.repository.find_by_approval_status(ApprovalStatus.PENDING)
        return self._accessible(pending, auth)

    # Internals

    @contextmanager
    def _unit_of_work(self, loan_id: str, auth: AuthContext, action: str) -> Iterator[LoanView]:
        """Lock, load projection, authorize, then run the body in one storage transaction"""
        with self.repository.lock(loan_id) as loan:
            view = self.project(loan)
            self._authorize(auth, view, action)
            with self.storage.atomic():
                yield view

    def _load_view(self, loan_id: str) -> LoanView:
        loan = self.repository.find_by_loan_id(loan_id)
        if not loan:
            raise LoanNotFound(f"Loan not found: {loan_id}")
        return self.project(loan)

    def project(self, loan: Loan) -> LoanView:
        account = self.accounts.find_by_id(loan.account_id)
        branch = self.branches.get(account.branch_id) if account else None
        return LoanView(loan=loan, account=account, branch=branch)

    def _authorize(self, auth: AuthContext, view: LoanView, action: str) -> None:
        try:
            self.authorization.require_loan_access(auth, view, action)
        except UnauthorizedAccess:
            self._deny(auth, action, view.loan_id)
            raise

    def _deny(self, auth: AuthContext, action: str, resource: str) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.ACCESS_DENIED,
            entity_type="loan",
            entity_id=resource,
            metadata={"action": action, **auth.describe()},
            user_id=auth.username
        )

    def _require_listing_role(self, auth: AuthContext, action: str, allow_customer: bool) -> None:
        if auth.is_admin:
            return
        if auth.is_branch_staff:
            if not auth.branch_id:
                self._deny(auth, action, "*")
                raise UnauthorizedAccess("User has no assigned branch")
            return
        if allow_customer and auth.role == Role.CUSTOMER:
            return
        self._deny(auth, action, "*")
        raise UnauthorizedAccess(f"Role {auth.role.value} is not authorized to {action} loans")

    def _accessible(self, loans: List[Loan], auth: AuthContext) -> List[Loan]:
        if auth.is_admin:
            return list(loans)
        return [l for l in loans if self.authorization.can_access_loan(auth, self.project(l))]

    def _page(self, loans: List[Loan], index: int, page_size: int, page_number: int) -> LoanPage:
        total = len(loans)
        start = index * page_size
        return LoanPage(
            loans=loans[start:start + page_size] if start < total else [],
            total_count=total,
            page_number=page_number,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0
        )

    def _record_history(self, loan: Loan, decision: ApprovalStatus, stage: ApprovalStage,
                        comments: Optional[str], conditions: Optional[str], auth: AuthContext) -> None:
        now = datetime.now(timezone.utc)
        self.repository.add_history(ApprovalHistoryEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            decision=decision,
            stage=stage,
            action_by=auth.username,
            action_date=now,
            comments=comments,
            approval_conditions=conditions
        ))

    def _disbursement_history(self, loan: Loan) -> List[Dict[str, Any]]:
        records = self.repository.disbursements_for(loan.id)
        if records:
            return [r.to_summary() for r in records]
        if loan.disbursement_status == DisbursementStatus.COMPLETED and loan.actual_disbursement_date:
            return [{
                'disbursement_date': loan.actual_disbursement_date.isoformat(),
                'amount': str(loan.disbursed_amount),
                'account_number': loan.account_number,
                'transaction_id': "N/A",
                'status': loan.disbursement_status.value,
                'reference': f"Loan ID: {loan.loan_id}"
            }]
        return []
