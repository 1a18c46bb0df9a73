"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import LendingSystem, get_current_user, get_lending_system
from .schemas import (
    ApproveLoanRequest, DisburseLoanRequest, ForecloseLoanRequest, LoanApplicationRequest,
    LoanSearchRequest, RejectLoanRequest, RepayLoanRequest, parse_amount, parse_date
)
from ..auth import AuthContext


router = APIRouter()


@router.post("/eligibility")
def check_eligibility(
    request: LoanApplicationRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Score an application without submitting it"""
    result = system.lifecycle.check_eligibility(request.to_application(), user)
    return result.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
def apply_for_loan(
    request: LoanApplicationRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan application"""
    loan = system.lifecycle.apply(request.to_application(), user)
    return {
        **loan.to_summary(),
        "message": "Loan application submitted successfully"
    }


@router.get("")
def list_loans(
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans visible to the caller, 1-based pages"""
    return system.lifecycle.list_loans(page, size, user).to_dict()


@router.post("/search")
def search_loans(
    request: LoanSearchRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Search loans visible to the caller, 0-based pages"""
    return system.lifecycle.search_loans(request.to_criteria(), user).to_dict()


@router.get("/pending-approvals")
def get_pending_approvals(
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    loans = system.lifecycle.get_pending_approvals(user)
    return {"loans": [loan.to_summary() for loan in loans], "count": len(loans)}


@router.get("/customer/{customer_id}")
def get_customer_loans(
    customer_id: str,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    loans = system.lifecycle.get_loans_by_customer(customer_id, user)
    return {"customer_id": customer_id, "loans": [loan.to_summary() for loan in loans]}


@router.post("/default-sweep")
def run_default_sweep(
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Mark loans with long-overdue installments as defaulted"""
    return system.default_sweep.run(user).to_dict()


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    return system.lifecycle.get_loan_by_id(loan_id, user).to_summary()


@router.get("/{loan_id}/statement")
def get_loan_statement(
    loan_id: str,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    return system.lifecycle.get_statement(loan_id, user).to_dict()


@router.get("/{loan_id}/approval-history")
def get_approval_history(
    loan_id: str,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    history = system.lifecycle.get_approval_history(loan_id, user)
    return {"loan_id": loan_id, "history": [entry.to_summary() for entry in history]}


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.lifecycle.approve(
        loan_id,
        conditions=request.approval_conditions,
        comments=request.comments,
        auth=user,
        interest_rate=parse_amount(request.interest_rate, "interest rate")
    )
    return {**loan.to_summary(), "message": "Loan approved successfully"}


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.lifecycle.reject(loan_id, request.rejection_reason, request.comments, user)
    return {**loan.to_summary(), "message": "Loan rejected"}


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse loan funds"""
    loan = system.lifecycle.disburse(
        loan_id,
        account_number=request.account_number,
        amount=parse_amount(request.amount, "amount"),
        auth=user
    )
    return {**loan.to_summary(), "message": "Loan disbursed successfully"}


@router.post("/{loan_id}/repay")
def repay_loan(
    loan_id: str,
    request: RepayLoanRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Make a loan repayment"""
    result = system.lifecycle.repay(
        loan_id,
        amount=parse_amount(request.amount, "amount"),
        payment_date=parse_date(request.payment_date, "payment date"),
        mode=request.payment_mode,
        auth=user
    )
    return {**result.to_dict(), "message": "Loan repayment processed successfully"}


@router.post("/{loan_id}/foreclose")
def foreclose_loan(
    loan_id: str,
    request: ForecloseLoanRequest,
    user: AuthContext = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.lifecycle.foreclose(
        loan_id,
        settlement_account_number=request.settlement_account_number,
        foreclosure_date=parse_date(request.foreclosure_date, "foreclosure date"),
        auth=user
    )
    return {**loan.to_summary(), "message": "Loan foreclosed successfully"}
