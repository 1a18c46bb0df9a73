"""
Customer and Account Directory Module

Storage-backed branches, customers and deposit accounts that the loan engine
looks up when applying for, disbursing and repaying loans.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .money import ZERO, to_decimal, quantize_money
from .storage import StorageInterface, StorageRecord


class CustomerStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"


class KYCStatus(Enum):
    """KYC verification status"""
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class AccountStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    FROZEN = "FROZEN"
    CLOSED = "CLOSED"


@dataclass
class Branch(StorageRecord):
    """Bank branch; `id` is the branch id carried in auth tokens"""
    branch_code: str
    name: str


@dataclass
class Customer(StorageRecord):
    """
    Customer profile as seen by the lending engine
    """
    customer_id: str  # External id, e.g. "C1001"
    first_name: str
    last_name: str
    email: str
    status: CustomerStatus = CustomerStatus.ACTIVE
    kyc_status: KYCStatus = KYCStatus.PENDING
    date_of_birth: Optional[date] = None
    branch_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE


@dataclass
class Account(StorageRecord):
    """Deposit account used for disbursement and repayment"""
    account_number: str
    customer_id: str  # External customer id of the owner
    branch_id: str
    balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    account_type: str = "SAVINGS"

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class BranchDirectory:
    """Branch lookup"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "branches"

    def create_branch(self, branch_code: str, name: str, branch_id: Optional[str] = None) -> Branch:
        now = datetime.now(timezone.utc)
        branch = Branch(
            id=branch_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            branch_code=branch_code,
            name=name
        )
        self.storage.save(self.table_name, branch.id, branch.to_dict())
        return branch

    def get(self, branch_id: str) -> Optional[Branch]:
        data = self.storage.load(self.table_name, branch_id)
        if data:
            return Branch.from_dict(data)
        return None


class CustomerDirectory:
    """Customer lookup by external customer id"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "customers"

    def create_customer(
        self,
        customer_id: str,
        first_name: str,
        last_name: str,
        email: str,
        status: CustomerStatus = CustomerStatus.ACTIVE,
        kyc_status: KYCStatus = KYCStatus.VERIFIED,
        date_of_birth: Optional[date] = None,
        branch_id: Optional[str] = None
    ) -> Customer:
        """Register a customer (used by seeding and tests)"""
        if self.find_by_customer_id(customer_id):
            raise ValueError(f"Customer {customer_id} already exists")

        now = datetime.now(timezone.utc)
        customer = Customer(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            status=status,
            kyc_status=kyc_status,
            date_of_birth=date_of_birth,
            branch_id=branch_id
        )
        self.save(customer)
        return customer

    def save(self, customer: Customer) -> None:
        customer.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, customer.id, self._customer_to_dict(customer))

    def find_by_customer_id(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.find_one(self.table_name, {'customer_id': customer_id})
        if data:
            return self._customer_from_dict(data)
        return None

    def _customer_to_dict(self, customer: Customer) -> Dict:
        result = customer.to_dict()
        result['date_of_birth'] = customer.date_of_birth.isoformat() if customer.date_of_birth else None
        return result

    def _customer_from_dict(self, data: Dict) -> Customer:
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            status=CustomerStatus(data['status']),
            kyc_status=KYCStatus(data['kyc_status']),
            date_of_birth=date.fromisoformat(data['date_of_birth']) if data.get('date_of_birth') else None,
            branch_id=data.get('branch_id')
        )


class AccountDirectory:
    """Account lookup by account number or internal id"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounts"

    def open_account(
        self,
        account_number: str,
        customer_id: str,
        branch_id: str,
        balance: Decimal = ZERO,
        status: AccountStatus = AccountStatus.ACTIVE,
        account_type: str = "SAVINGS"
    ) -> Account:
        """Open a deposit account (used by seeding and tests)"""
        if self.find_by_account_number(account_number):
            raise ValueError(f"Account {account_number} already exists")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number,
            customer_id=customer_id,
            branch_id=branch_id,
            balance=quantize_money(to_decimal(balance)),
            status=status,
            account_type=account_type
        )
        self.save(account)
        return account

    def save(self, account: Account) -> None:
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, account.to_dict())

    def find_by_account_number(self, account_number: str) -> Optional[Account]:
        data = self.storage.find_one(self.table_name, {'account_number': account_number})
        if data:
            return self._account_from_dict(data)
        return None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def find_by_customer(self, customer_id: str) -> List[Account]:
        return [self._account_from_dict(d) for d in self.storage.find(self.table_name, {'customer_id': customer_id})]

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            branch_id=data['branch_id'],
            balance=Decimal(data['balance']),
            status=AccountStatus(data['status']),
            account_type=data.get('account_type', "SAVINGS")
        )
