"""
Transaction Processing Module

Deposits and withdrawals against directory accounts. The loan engine treats
each call as an atomic black box: it either posts completely or raises
before touching any balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .auth import AuthContext, BranchAuthorization
from .directory import AccountDirectory, Account
from .exceptions import (
    AccountInactive, AccountNotFound, InsufficientBalance,
    UnauthorizedAccess, ValidationError
)
from .logging_config import get_logger, log_action
from .money import ZERO, to_decimal, quantize_money
from .storage import StorageInterface


logger = get_logger("lending.transactions")


class TransactionType(Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


@dataclass
class TransactionResult:
    """Posted transaction as returned to the caller"""
    transaction_id: str
    account_number: str
    amount: Decimal
    balance_after: Decimal
    transaction_type: TransactionType
    mode: str
    description: str
    created_at: datetime

    def to_dict(self) -> Dict:
        return {
            'transaction_id': self.transaction_id,
            'account_number': self.account_number,
            'amount': str(self.amount),
            'balance_after': str(self.balance_after),
            'transaction_type': self.transaction_type.value,
            'mode': self.mode,
            'description': self.description,
            'created_at': self.created_at.isoformat()
        }


class TransactionProcessor:
    """
    Posts deposits and withdrawals.

    Callers must be ADMIN, the account owner, or staff of the account's
    branch. Amounts are quantized to 2 decimal places.
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountDirectory,
        authorization: Optional[BranchAuthorization] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.authorization = authorization or BranchAuthorization()
        self.table_name = "transactions"

    def deposit(self, account_number: str, amount: Decimal, mode: str,
                description: str, auth: AuthContext) -> TransactionResult:
        """Credit an account"""
        return self._post(TransactionType.DEPOSIT, account_number, amount, mode, description, auth)

    def withdraw(self, account_number: str, amount: Decimal, mode: str,
                 description: str, auth: AuthContext) -> TransactionResult:
        """Debit an account; raises InsufficientBalance if it cannot cover the amount"""
        return self._post(TransactionType.WITHDRAWAL, account_number, amount, mode, description, auth)

    def get_account_transactions(self, account_number: str) -> List[TransactionResult]:
        rows = self.storage.find(self.table_name, {'account_number': account_number})
        results = [self._result_from_dict(row) for row in rows]
        results.sort(key=lambda r: r.created_at)
        return results

    def _post(self, transaction_type: TransactionType, account_number: str, amount: Decimal,
              mode: str, description: str, auth: AuthContext) -> TransactionResult:
        amount = quantize_money(to_decimal(amount))
        if amount <= ZERO:
            raise ValidationError("Transaction amount must be positive")

        with self.storage.atomic():
            account = self.accounts.find_by_account_number(account_number)
            if not account:
                raise AccountNotFound(f"Account not found: {account_number}")

            self._authorize(account, auth, transaction_type)

            if not account.is_active:
                raise AccountInactive(f"Account {account_number} is not active")

            if transaction_type == TransactionType.WITHDRAWAL:
                if account.balance < amount:
                    raise InsufficientBalance(
                        f"Insufficient balance in account {account_number}"
                    )
                account.balance = account.balance - amount
            else:
                account.balance = account.balance + amount

            self.accounts.save(account)

            result = TransactionResult(
                transaction_id=f"TXN{uuid.uuid4().hex[:16].upper()}",
                account_number=account_number,
                amount=amount,
                balance_after=account.balance,
                transaction_type=transaction_type,
                mode=mode,
                description=description,
                created_at=datetime.now(timezone.utc)
            )
            row = result.to_dict()
            row['id'] = result.transaction_id
            self.storage.save(self.table_name, result.transaction_id, row)

        log_action(
            logger, "info",
            f"{transaction_type.value} of {amount} on {account_number}",
            user_id=auth.username, action=f"transaction.{transaction_type.value.lower()}",
            resource=result.transaction_id,
            extra={"mode": mode, "balance_after": str(result.balance_after)}
        )
        return result

    def _authorize(self, account: Account, auth: AuthContext, transaction_type: TransactionType) -> None:
        if self.authorization.can_access_account(auth, account):
            return
        log_action(
            logger, "warning", f"Access denied to account {account.account_number}",
            user_id=auth.username, action=f"transaction.{transaction_type.value.lower()}",
            resource=account.account_number, extra=auth.describe()
        )
        raise UnauthorizedAccess(f"Not authorized to operate on account {account.account_number}")

    def _result_from_dict(self, data: Dict) -> TransactionResult:
        return TransactionResult(
            transaction_id=data['transaction_id'],
            account_number=data['account_number'],
            amount=Decimal(data['amount']),
            balance_after=Decimal(data['balance_after']),
            transaction_type=TransactionType(data['transaction_type']),
            mode=data['mode'],
            description=data['description'],
            created_at=datetime.fromisoformat(data['created_at'])
        )
