"""
Test suite for authentication and authorization

Bearer token resolution and the branch/customer scoped access rules.
"""

import pytest
from datetime import timedelta
from types import SimpleNamespace

import jwt

from core_lending.auth import (
    AuthContext, BranchAuthorization, Role, TokenResolver, system_context
)
from core_lending.exceptions import AuthenticationError, UnauthorizedAccess


SECRET = "test-secret-key-for-lending-tokens-0001"


class TestTokenResolver:
    """Test JWT issue and resolve"""

    def setup_method(self):
        self.resolver = TokenResolver(secret=SECRET, algorithm="HS256", expiry_hours=1)

    def test_round_trip_staff(self):
        token = self.resolver.issue("officer1", Role.LOAN_OFFICER, branch_id="B1")
        auth = self.resolver.resolve(token)

        assert auth == AuthContext("officer1", Role.LOAN_OFFICER, None, "B1")
        assert auth.is_branch_staff
        assert not auth.is_admin

    def test_round_trip_customer(self):
        token = self.resolver.issue("asha", Role.CUSTOMER, customer_id="C1001")
        auth = self.resolver.resolve(token)

        assert auth.customer_id == "C1001"
        assert auth.branch_id is None

    def test_claim_names(self):
        token = self.resolver.issue("m1", Role.BRANCH_MANAGER, branch_id="B2")
        payload = jwt.decode(token, SECRET, algorithms=["HS256"])

        assert payload["sub"] == "m1"
        assert payload["role"] == "BRANCH_MANAGER"
        assert payload["branchId"] == "B2"
        assert "customerId" not in payload

    def test_missing_token(self):
        with pytest.raises(AuthenticationError, match="Not authenticated"):
            self.resolver.resolve(None)
        with pytest.raises(AuthenticationError):
            self.resolver.resolve("")

    def test_expired_token(self):
        token = self.resolver.issue("officer1", Role.LOAN_OFFICER, expires_in=timedelta(seconds=-10))
        with pytest.raises(AuthenticationError, match="Token expired"):
            self.resolver.resolve(token)

    def test_wrong_signature(self):
        other = TokenResolver(secret="another-secret-key-for-lending-tokens-02", algorithm="HS256")
        token = other.issue("admin", Role.ADMIN)
        with pytest.raises(AuthenticationError, match="Invalid token"):
            self.resolver.resolve(token)

    def test_garbage_token(self):
        with pytest.raises(AuthenticationError, match="Invalid token"):
            self.resolver.resolve("not-a-jwt")

    def test_unknown_role(self):
        token = jwt.encode({"sub": "x", "role": "JANITOR"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError, match="Unknown role: JANITOR"):
            self.resolver.resolve(token)

    def test_missing_subject(self):
        token = jwt.encode({"role": "ADMIN"}, SECRET, algorithm="HS256")
        with pytest.raises(AuthenticationError):
            self.resolver.resolve(token)

    def test_system_token_is_admin(self):
        auth = self.resolver.resolve(self.resolver.system_token())
        assert auth.is_admin
        assert auth.username == system_context().username == "system"


class TestBranchAuthorization:
    """Test per-role access rules"""

    def setup_method(self):
        self.authorization = BranchAuthorization()
        self.loan = SimpleNamespace(loan_id="L1", customer_id="C1001", branch_id="B1")

    def test_admin_sees_everything(self):
        assert self.authorization.can_access_loan(AuthContext("root", Role.ADMIN), self.loan)

    def test_customer_sees_own_loans_only(self):
        assert self.authorization.can_access_loan(AuthContext("asha", Role.CUSTOMER, "C1001"), self.loan)
        assert not self.authorization.can_access_loan(AuthContext("vik", Role.CUSTOMER, "C1002"), self.loan)
        assert not self.authorization.can_access_loan(AuthContext("anon", Role.CUSTOMER), self.loan)

    @pytest.mark.parametrize("role", [Role.BRANCH_MANAGER, Role.LOAN_OFFICER])
    def test_branch_staff_scoped_to_branch(self, role):
        assert self.authorization.can_access_loan(AuthContext("s", role, branch_id="B1"), self.loan)
        assert not self.authorization.can_access_loan(AuthContext("s", role, branch_id="B2"), self.loan)
        assert not self.authorization.can_access_loan(AuthContext("s", role), self.loan)

    def test_role_without_rule_is_denied(self):
        assert not self.authorization.can_access_loan(AuthContext("cards", Role.CARD_OFFICER, branch_id="B1"), self.loan)

    def test_account_rules_match_loan_rules(self):
        account = SimpleNamespace(customer_id="C1001", branch_id="B1")
        assert self.authorization.can_access_account(AuthContext("s", Role.LOAN_OFFICER, branch_id="B1"), account)
        assert not self.authorization.can_access_account(AuthContext("vik", Role.CUSTOMER, "C1002"), account)

    def test_require_loan_access(self):
        self.authorization.require_loan_access(AuthContext("root", Role.ADMIN), self.loan, "view")
        with pytest.raises(UnauthorizedAccess, match="Not authorized to view loan L1"):
            self.authorization.require_loan_access(AuthContext("s", Role.LOAN_OFFICER, branch_id="B2"), self.loan, "view")

    def test_custom_rules(self):
        authorization = BranchAuthorization({Role.CARD_OFFICER: lambda auth, customer_id, branch_id: True})
        assert authorization.can_access_loan(AuthContext("cards", Role.CARD_OFFICER), self.loan)
        assert not authorization.can_access_loan(AuthContext("root", Role.ADMIN), self.loan)
