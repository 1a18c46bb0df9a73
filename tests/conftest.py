"""
Shared fixtures: an in-memory lending system seeded with two branches,
two customers and their accounts
"""

import pytest
from decimal import Decimal

from core_lending.api.auth import LendingSystem
from core_lending.auth import AuthContext, Role
from core_lending.config import LendingConfig
from core_lending.eligibility import LoanApplication, LoanType
from core_lending.storage import InMemoryStorage


ADMIN = AuthContext(username="admin", role=Role.ADMIN)
OFFICER_B1 = AuthContext(username="officer1", role=Role.LOAN_OFFICER, branch_id="B1")
MANAGER_B1 = AuthContext(username="manager1", role=Role.BRANCH_MANAGER, branch_id="B1")
OFFICER_B2 = AuthContext(username="officer2", role=Role.LOAN_OFFICER, branch_id="B2")
CUSTOMER_C1001 = AuthContext(username="c1001", role=Role.CUSTOMER, customer_id="C1001")
CUSTOMER_C1002 = AuthContext(username="c1002", role=Role.CUSTOMER, customer_id="C1002")


def make_application(**overrides) -> LoanApplication:
    """Personal loan of 100,000.00 at 12% over 12 months for C1001"""
    fields = dict(
        customer_id="C1001",
        loan_type=LoanType.PERSONAL,
        loan_amount=Decimal('100000.00'),
        tenure_months=12,
        annual_interest_rate=Decimal('12.00'),
        account_number="ACC1001",
        age=35,
        monthly_income=Decimal('100000.00'),
        purpose="Home renovation"
    )
    fields.update(overrides)
    return LoanApplication(**fields)


@pytest.fixture
def system():
    """Lending system on in-memory storage"""
    lending = LendingSystem(cfg=LendingConfig(), storage=InMemoryStorage())

    lending.branches.create_branch("BR001", "Main Branch", branch_id="B1")
    lending.branches.create_branch("BR002", "North Branch", branch_id="B2")

    lending.customers.create_customer("C1001", "Asha", "Rao", "asha@example.com", branch_id="B1")
    lending.customers.create_customer("C1002", "Vikram", "Shah", "vikram@example.com", branch_id="B2")

    lending.accounts.open_account("ACC1001", "C1001", "B1", balance=Decimal('500000.00'))
    lending.accounts.open_account("ACC1002", "C1002", "B2", balance=Decimal('100000.00'))
    return lending


@pytest.fixture
def lifecycle(system):
    return system.lifecycle


@pytest.fixture
def applied_loan(lifecycle):
    return lifecycle.apply(make_application(), OFFICER_B1)


@pytest.fixture
def approved_loan(lifecycle, applied_loan):
    return lifecycle.approve(applied_loan.loan_id, "Salary mandate", "Looks good", MANAGER_B1)


@pytest.fixture
def active_loan(lifecycle, approved_loan):
    return lifecycle.disburse(approved_loan.loan_id, None, None, MANAGER_B1)
