"""
Authentication and Authorization Module

Roles, the per-request AuthContext, branch/customer scoped access rules and
the JWT resolver that turns a bearer token into an AuthContext.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import jwt

from .config import LendingConfig, get_config
from .exceptions import AuthenticationError, UnauthorizedAccess
from .logging_config import get_logger, log_action


logger = get_logger("lending.auth")


class Role(Enum):
    """Closed set of back-office roles"""
    ADMIN = "ADMIN"
    BRANCH_MANAGER = "BRANCH_MANAGER"
    LOAN_OFFICER = "LOAN_OFFICER"
    CUSTOMER = "CUSTOMER"
    CARD_OFFICER = "CARD_OFFICER"


BRANCH_STAFF_ROLES = frozenset({Role.BRANCH_MANAGER, Role.LOAN_OFFICER})


@dataclass(frozen=True)
class AuthContext:
    """Resolved caller identity passed into every operation"""
    username: str
    role: Role
    customer_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_branch_staff(self) -> bool:
        return self.role in BRANCH_STAFF_ROLES

    def describe(self) -> Dict[str, Any]:
        """Role/branch/customer context for logs and audit metadata"""
        return {
            "username": self.username,
            "role": self.role.value,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
        }


def system_context(cfg: Optional[LendingConfig] = None) -> AuthContext:
    """Principal used by scheduled jobs such as the default sweep"""
    cfg = cfg or get_config()
    return AuthContext(username=cfg.system_username, role=Role.ADMIN)


def _admin_rule(auth: AuthContext, customer_id: Optional[str], branch_id: Optional[str]) -> bool:
    return True


def _customer_rule(auth: AuthContext, customer_id: Optional[str], branch_id: Optional[str]) -> bool:
    return auth.customer_id is not None and auth.customer_id == customer_id


def _branch_rule(auth: AuthContext, customer_id: Optional[str], branch_id: Optional[str]) -> bool:
    return auth.branch_id is not None and auth.branch_id == branch_id


AccessRule = Callable[[AuthContext, Optional[str], Optional[str]], bool]

ACCESS_RULES: Dict[Role, AccessRule] = {
    Role.ADMIN: _admin_rule,
    Role.CUSTOMER: _customer_rule,
    Role.BRANCH_MANAGER: _branch_rule,
    Role.LOAN_OFFICER: _branch_rule,
}


class BranchAuthorization:
    """
    Table-driven access rules for loans and accounts.

    ADMIN always has access, a CUSTOMER only to their own records, branch
    staff only to records of their branch. Any role without a rule is denied.
    """

    def __init__(self, rules: Optional[Dict[Role, AccessRule]] = None):
        self.rules = dict(rules or ACCESS_RULES)

    def _check(self, auth: AuthContext, customer_id: Optional[str], branch_id: Optional[str]) -> bool:
        rule = self.rules.get(auth.role)
        if rule is None:
            return False
        return rule(auth, customer_id, branch_id)

    def can_access_loan(self, auth: AuthContext, loan: Any) -> bool:
        """`loan` is anything exposing customer_id and branch_id (Loan or LoanView)"""
        return self._check(auth, loan.customer_id, loan.branch_id)

    def can_access_account(self, auth: AuthContext, account: Any) -> bool:
        return self._check(auth, account.customer_id, account.branch_id)

    def require_loan_access(self, auth: AuthContext, loan: Any, action: str) -> None:
        """Raise UnauthorizedAccess (logged with caller context) unless access is granted"""
        if self.can_access_loan(auth, loan):
            return
        log_action(
            logger, "warning", f"Access denied to loan {loan.loan_id}",
            user_id=auth.username, action=action, resource=loan.loan_id,
            extra={**auth.describe(), "loan_branch_id": loan.branch_id}
        )
        raise UnauthorizedAccess(f"Not authorized to {action} loan {loan.loan_id}")


class TokenResolver:
    """HS256 bearer tokens with claims sub, role, customerId, branchId"""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None,
                 expiry_hours: Optional[int] = None):
        cfg = get_config()
        self.secret = secret or cfg.jwt_secret
        self.algorithm = algorithm or cfg.jwt_algorithm
        self.expiry_hours = expiry_hours if expiry_hours is not None else cfg.jwt_expiry_hours

    def issue(self, username: str, role: Role, customer_id: Optional[str] = None,
              branch_id: Optional[str] = None, expires_in: Optional[timedelta] = None) -> str:
        """Issue a signed token for the given principal"""
        now = datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "sub": username,
            "role": role.value,
            "iat": now,
            "exp": now + (expires_in if expires_in is not None else timedelta(hours=self.expiry_hours)),
        }
        if customer_id:
            payload["customerId"] = customer_id
        if branch_id:
            payload["branchId"] = branch_id
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def resolve(self, token: Optional[str]) -> AuthContext:
        """
        Decode and validate a bearer token

        Raises:
            AuthenticationError: If the token is missing, expired, malformed
                or carries an unknown role
        """
        if not token:
            raise AuthenticationError("Not authenticated")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token")

        username = payload.get("sub")
        if not username:
            raise AuthenticationError("Invalid token")
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise AuthenticationError(f"Unknown role: {payload.get('role')}")

        return AuthContext(
            username=username,
            role=role,
            customer_id=payload.get("customerId"),
            branch_id=payload.get("branchId"),
        )

    def system_token(self) -> str:
        """Token for the scheduler's system principal"""
        principal = system_context()
        return self.issue(principal.username, principal.role)
