"""
Pydantic schemas for API requests
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..eligibility import LoanApplication, LoanType
from ..exceptions import ValidationError
from ..loans import LoanSearchCriteria, LoanStatus
from ..money import to_decimal


def parse_amount(value: Optional[str], field_name: str) -> Optional[Decimal]:
    """Decimal from a request string; None passes through"""
    if value is None:
        return None
    try:
        return to_decimal(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}")


def parse_date(value: Optional[str], field_name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}")


# Application schemas
class LoanApplicationRequest(BaseModel):
    customer_id: str
    loan_type: str = Field(..., description="HOME, CAR, PERSONAL, EDUCATION, BUSINESS, GOLD, ...")
    loan_amount: str = Field(..., description="Decimal amount as string")
    tenure_months: int
    annual_interest_rate: str = Field(..., description="Annual rate in percent as string")
    account_number: str
    age: int
    monthly_income: str
    applicant_type: str = "INDIVIDUAL"
    collateral_type: Optional[str] = None
    collateral_value: Optional[str] = None
    collateral_description: Optional[str] = None
    applicant_name: Optional[str] = None
    employment_type: Optional[str] = None
    purpose: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_application(self) -> LoanApplication:
        return LoanApplication(
            customer_id=self.customer_id,
            loan_type=LoanType.parse(self.loan_type),
            loan_amount=parse_amount(self.loan_amount, "loan amount"),
            tenure_months=self.tenure_months,
            annual_interest_rate=parse_amount(self.annual_interest_rate, "interest rate"),
            account_number=self.account_number,
            age=self.age,
            monthly_income=parse_amount(self.monthly_income, "monthly income"),
            applicant_type=self.applicant_type,
            collateral_type=self.collateral_type,
            collateral_value=parse_amount(self.collateral_value, "collateral value"),
            collateral_description=self.collateral_description,
            applicant_name=self.applicant_name,
            employment_type=self.employment_type,
            purpose=self.purpose,
            details=self.details
        )


# Decision schemas
class ApproveLoanRequest(BaseModel):
    approval_conditions: Optional[str] = None
    comments: Optional[str] = None
    interest_rate: Optional[str] = None  # Modified annual rate


class RejectLoanRequest(BaseModel):
    rejection_reason: str
    comments: Optional[str] = None


# Money movement schemas
class DisburseLoanRequest(BaseModel):
    account_number: Optional[str] = None
    amount: Optional[str] = None


class RepayLoanRequest(BaseModel):
    amount: str
    payment_date: Optional[str] = None  # ISO date string
    payment_mode: Optional[str] = None


class ForecloseLoanRequest(BaseModel):
    settlement_account_number: Optional[str] = None
    foreclosure_date: Optional[str] = None  # ISO date string


# Query schemas
class LoanSearchRequest(BaseModel):
    customer_id: Optional[str] = None
    loan_status: Optional[str] = None
    loan_type: Optional[str] = None
    page_number: int = 0
    page_size: Optional[int] = None

    def to_criteria(self) -> LoanSearchCriteria:
        status = None
        if self.loan_status:
            try:
                status = LoanStatus(self.loan_status.upper())
            except ValueError:
                raise ValidationError(f"Unknown loan status: {self.loan_status}")
        return LoanSearchCriteria(
            customer_id=self.customer_id,
            loan_status=status,
            loan_type=LoanType.parse(self.loan_type) if self.loan_type else None,
            page_number=self.page_number,
            page_size=self.page_size
        )
