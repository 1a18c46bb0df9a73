"""
Loan Eligibility Module

Validated loan applications and the rule-based eligibility evaluator.
Each failed rule deducts from a score that starts at 100 and records a
reason; an application is eligible only when the score clears the pass mark
AND no reason was recorded.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum

from . import amortization
from .config import LendingConfig, get_config
from .directory import AccountDirectory, CustomerDirectory, KYCStatus
from .exceptions import EligibilityRejected, ValidationError
from .logging_config import get_logger
from .money import HUNDRED, ZERO, quantize_money, to_decimal

if TYPE_CHECKING:
    from .loans import LoanRepository


logger = get_logger("lending.eligibility")


class LoanType(Enum):
    HOME = "HOME"
    CAR = "CAR"
    PERSONAL = "PERSONAL"
    EDUCATION = "EDUCATION"
    BUSINESS = "BUSINESS"
    GOLD = "GOLD"
    INDUSTRIAL = "INDUSTRIAL"
    WORKING_CAPITAL = "WORKING_CAPITAL"
    IMPORT_LC = "IMPORT_LC"

    @classmethod
    def parse(cls, value: str) -> 'LoanType':
        """Accept "HOME" as well as "home_loan" / "HOME_LOAN" """
        if isinstance(value, cls):
            return value
        name = str(value).strip().upper()
        if name.endswith("_LOAN"):
            name = name[:-len("_LOAN")]
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(f"Unknown loan type: {value}")

    @property
    def is_secured(self) -> bool:
        return self in SECURED_LOAN_TYPES


SECURED_LOAN_TYPES = frozenset({LoanType.HOME, LoanType.CAR, LoanType.GOLD, LoanType.INDUSTRIAL})


class ApplicantType(Enum):
    INDIVIDUAL = "INDIVIDUAL"
    CORPORATE = "CORPORATE"


class RiskRating(Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


@dataclass
class LoanApplication:
    """Loan request as submitted by a customer or officer"""
    customer_id: str
    loan_type: LoanType
    loan_amount: Decimal
    tenure_months: int
    annual_interest_rate: Decimal
    account_number: str
    age: int
    monthly_income: Decimal
    applicant_type: ApplicantType = ApplicantType.INDIVIDUAL
    collateral_type: Optional[str] = None
    collateral_value: Optional[Decimal] = None
    collateral_description: Optional[str] = None
    applicant_name: Optional[str] = None
    employment_type: Optional[str] = None
    purpose: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)  # LC number, industry type, turnover...

    def __post_init__(self):
        self.loan_type = LoanType.parse(self.loan_type)
        if not isinstance(self.applicant_type, ApplicantType):
            try:
                self.applicant_type = ApplicantType(str(self.applicant_type).upper())
            except ValueError:
                raise ValidationError(f"Unknown applicant type: {self.applicant_type}")
        self.loan_amount = to_decimal(self.loan_amount)
        self.annual_interest_rate = to_decimal(self.annual_interest_rate)
        self.monthly_income = to_decimal(self.monthly_income)
        if self.collateral_value is not None:
            self.collateral_value = to_decimal(self.collateral_value)

    def validate(self, cfg: Optional[LendingConfig] = None) -> None:
        """
        Check request fields against configured bounds

        Raises:
            ValidationError: On the first field out of range, with every
                violation listed in `reasons`
        """
        cfg = cfg or get_config()
        errors = []

        if not self.customer_id or not str(self.customer_id).strip():
            errors.append("Customer ID is required")
        if not self.account_number or not str(self.account_number).strip():
            errors.append("Account number for disbursement is required")

        min_amount = Decimal(cfg.min_loan_amount)
        max_amount = Decimal(cfg.max_loan_amount)
        if self.loan_amount < min_amount:
            errors.append(f"Minimum loan amount is {min_amount}")
        elif self.loan_amount > max_amount:
            errors.append(f"Maximum loan amount is {max_amount}")

        if self.tenure_months is None or self.tenure_months < cfg.min_tenure_months:
            errors.append(f"Minimum tenure is {cfg.min_tenure_months} months")
        elif self.tenure_months > cfg.max_tenure_months:
            errors.append(f"Maximum tenure is {cfg.max_tenure_months} months")

        min_rate = Decimal(cfg.min_interest_rate)
        max_rate = Decimal(cfg.max_interest_rate)
        if self.annual_interest_rate < min_rate:
            errors.append(f"Minimum interest rate is {min_rate}%")
        elif self.annual_interest_rate > max_rate:
            errors.append(f"Maximum interest rate is {max_rate}%")

        if self.collateral_value is not None and self.collateral_value < ZERO:
            errors.append("Collateral value cannot be negative")

        if self.purpose and len(self.purpose) > cfg.max_purpose_length:
            errors.append(f"Purpose cannot exceed {cfg.max_purpose_length} characters")

        if errors:
            raise ValidationError(errors[0], reasons=errors)


@dataclass
class EligibilityResult:
    """Outcome of an eligibility check"""
    is_eligible: bool
    score: int
    reasons: List[str]
    recommended_amount: Decimal
    recommended_rate: Decimal
    risk_rating: RiskRating
    next_review_date: date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_eligible': self.is_eligible,
            'score': self.score,
            'reasons': list(self.reasons),
            'recommended_amount': str(self.recommended_amount),
            'recommended_rate': str(self.recommended_rate),
            'risk_rating': self.risk_rating.value,
            'next_review_date': self.next_review_date.isoformat()
        }


def recommended_rate(score: int) -> Decimal:
    if score >= 90:
        return Decimal('7.50')
    elif score >= 80:
        return Decimal('8.50')
    elif score >= 70:
        return Decimal('9.50')
    return Decimal('11.50')


def risk_rating(score: int) -> RiskRating:
    if score >= 90:
        return RiskRating.LOW
    elif score >= 75:
        return RiskRating.MODERATE
    elif score >= 60:
        return RiskRating.HIGH
    return RiskRating.VERY_HIGH


class EligibilityEvaluator:
    """
    Scores a loan application against customer, account and loan history
    """

    def __init__(
        self,
        customers: CustomerDirectory,
        accounts: AccountDirectory,
        loans: 'LoanRepository',
        cfg: Optional[LendingConfig] = None
    ):
        self.customers = customers
        self.accounts = accounts
        self.loans = loans
        self.cfg = cfg or get_config()

    def check_eligibility(self, application: LoanApplication) -> EligibilityResult:
        """
        Run every eligibility rule against the application

        Raises:
            EligibilityRejected: If the customer or the linked account does not exist
        """
        cfg = self.cfg
        logger.info(f"Checking loan eligibility for customer: {application.customer_id}")

        reasons: List[str] = []
        score = 100

        customer = self.customers.find_by_customer_id(application.customer_id)
        if not customer:
            raise EligibilityRejected("Customer not found", reasons=["Customer ID is invalid"])

        if not customer.is_active:
            reasons.append("Customer account is not active")
            score -= 100

        if customer.kyc_status != KYCStatus.VERIFIED:
            reasons.append("KYC verification is pending or rejected")
            score -= 30

        if application.age is None or application.age < cfg.min_age or application.age > cfg.max_age:
            reasons.append(f"Age must be between {cfg.min_age} and {cfg.max_age} years")
            score -= 25

        min_income = Decimal(cfg.min_monthly_income)
        if application.monthly_income < min_income:
            reasons.append(f"Minimum monthly income required: {min_income}")
            score -= 20

        existing_emi = self.loans.total_active_emi(application.customer_id)
        proposed_emi = amortization.calculate_emi(
            application.loan_amount, application.annual_interest_rate, application.tenure_months
        )
        dti = amortization.calculate_dti(existing_emi + proposed_emi, application.monthly_income)
        max_dti = Decimal(cfg.max_dti_ratio)
        logger.debug(
            f"DTI calculation - existing EMI {existing_emi}, proposed EMI {proposed_emi}, "
            f"income {application.monthly_income}, DTI {dti}%"
        )
        if dti > max_dti:
            reasons.append(
                f"Debt-to-Income ratio ({dti:.2f}%) exceeds maximum allowed ({max_dti:.2f}%)"
            )
            score -= 30

        if application.loan_type.is_secured:
            collateral = application.collateral_value
            if collateral is None or collateral <= ZERO:
                reasons.append("Collateral is required for this loan type")
                score -= 40
            else:
                ltv = amortization.calculate_ltv(application.loan_amount, collateral)
                max_ltv = Decimal(cfg.max_ltv_ratio)
                if ltv > max_ltv:
                    reasons.append(f"Loan-to-Value ratio ({ltv:.2f}%) exceeds maximum ({max_ltv:.2f}%)")
                    score -= 25

                min_collateral_ratio = Decimal(cfg.min_collateral_ratio)
                collateral_ratio = quantize_money(collateral * HUNDRED / application.loan_amount)
                if collateral_ratio < min_collateral_ratio:
                    reasons.append(
                        f"Collateral value must be at least {min_collateral_ratio}% of loan amount"
                    )
                    score -= 20

        if self.loans.has_defaulted_loans(application.customer_id):
            reasons.append("Customer has defaulted loans")
            score -= 50

        account = self.accounts.find_by_account_number(application.account_number)
        if not account:
            raise EligibilityRejected("Account not found", reasons=["Invalid account number"])

        if account.customer_id != application.customer_id:
            reasons.append("Account does not belong to the customer")
            score -= 100

        if not account.is_active:
            reasons.append("Linked account is not active")
            score -= 30

        score = max(0, score)
        is_eligible = score >= cfg.eligibility_pass_score and not reasons

        result = EligibilityResult(
            is_eligible=is_eligible,
            score=score,
            reasons=reasons,
            recommended_amount=self._recommended_amount(application, existing_emi),
            recommended_rate=recommended_rate(score),
            risk_rating=risk_rating(score),
            next_review_date=amortization.add_months(date.today(), 3)
        )

        logger.info(
            f"Eligibility check completed - eligible: {is_eligible}, score: {score}, "
            f"reasons: {len(reasons)}"
        )
        return result

    def _recommended_amount(self, application: LoanApplication, existing_emi: Decimal) -> Decimal:
        """Principal serviceable by a capped share of income net of existing EMIs"""
        max_emi = application.monthly_income * Decimal(self.cfg.max_recommended_emi_ratio) - existing_emi
        if max_emi <= ZERO:
            return ZERO
        return amortization.principal_for_emi(
            max_emi, application.annual_interest_rate, application.tenure_months
        )
