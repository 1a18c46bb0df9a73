"""
API tests for the loan endpoints

Drives the FastAPI app through TestClient with the lending system swapped
for the seeded in-memory one.
"""

import pytest
from datetime import timedelta

from fastapi.testclient import TestClient

from core_lending import __version__
from core_lending.api import app, status_for
from core_lending.api.auth import get_lending_system
from core_lending.auth import Role
from core_lending.exceptions import (
    AlreadyDisbursed, EligibilityRejected, InvalidInput, LoanNotFound, UnauthorizedAccess
)


APPLICATION = {
    "customer_id": "C1001",
    "loan_type": "PERSONAL",
    "loan_amount": "100000.00",
    "tenure_months": 12,
    "annual_interest_rate": "12.00",
    "account_number": "ACC1001",
    "age": 35,
    "monthly_income": "100000.00",
    "purpose": "Home renovation"
}


@pytest.fixture
def client(system):
    app.dependency_overrides[get_lending_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def tokens(system):
    issue = system.token_resolver.issue
    return {
        "admin": issue("admin", Role.ADMIN),
        "officer_b1": issue("officer1", Role.LOAN_OFFICER, branch_id="B1"),
        "manager_b1": issue("manager1", Role.BRANCH_MANAGER, branch_id="B1"),
        "officer_b2": issue("officer2", Role.LOAN_OFFICER, branch_id="B2"),
        "customer_c1001": issue("c1001", Role.CUSTOMER, customer_id="C1001"),
        "customer_c1002": issue("c1002", Role.CUSTOMER, customer_id="C1002"),
    }


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def apply_loan(client, token, **overrides):
    response = client.post("/loans", json={**APPLICATION, **overrides}, headers=bearer(token))
    assert response.status_code == 201, response.text
    return response.json()["loan_id"]


def activate_loan(client, tokens):
    loan_id = apply_loan(client, tokens["officer_b1"])
    client.post(f"/loans/{loan_id}/approve", json={}, headers=bearer(tokens["manager_b1"]))
    response = client.post(f"/loans/{loan_id}/disburse", json={}, headers=bearer(tokens["manager_b1"]))
    assert response.status_code == 200, response.text
    return loan_id


class TestErrorMapping:

    def test_status_for(self):
        assert status_for(AlreadyDisbursed("x")) == 409
        assert status_for(InvalidInput("x")) == 400
        assert status_for(LoanNotFound("x")) == 404
        assert status_for(EligibilityRejected("x")) == 422
        assert status_for(UnauthorizedAccess("x")) == 403


class TestAuthentication:

    def test_health_needs_no_token(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "core_lending_api", "version": __version__}

    def test_missing_token(self, client):
        response = client.get("/loans")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["detail"] == "Not authenticated"

    def test_invalid_token(self, client):
        response = client.get("/loans", headers=bearer("garbage"))
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_expired_token(self, client, system):
        token = system.token_resolver.issue("admin", Role.ADMIN, expires_in=timedelta(seconds=-5))
        response = client.get("/loans", headers=bearer(token))
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"


class TestLoanEndpoints:

    def test_eligibility(self, client, tokens):
        response = client.post("/loans/eligibility", json=APPLICATION, headers=bearer(tokens["officer_b1"]))

        assert response.status_code == 200
        body = response.json()
        assert body["is_eligible"] is True
        assert body["score"] == 100
        assert body["recommended_rate"] == "7.50"

    def test_apply(self, client, tokens):
        response = client.post("/loans", json=APPLICATION, headers=bearer(tokens["officer_b1"]))

        assert response.status_code == 201
        body = response.json()
        assert body["loan_id"].startswith("L")
        assert body["loan_status"] == "APPLICATION"
        assert body["approval_status"] == "PENDING"
        assert body["monthly_emi"] == "8884.88"
        assert body["message"] == "Loan application submitted successfully"

    def test_apply_ineligible(self, client, tokens):
        response = client.post(
            "/loans", json={**APPLICATION, "monthly_income": "10000.00"},
            headers=bearer(tokens["officer_b1"])
        )
        assert response.status_code == 422
        assert response.json()["reasons"] == [
            "Debt-to-Income ratio (88.85%) exceeds maximum allowed (50.00%)"
        ]

    def test_apply_invalid_amount(self, client, tokens):
        response = client.post(
            "/loans", json={**APPLICATION, "loan_amount": "lots"},
            headers=bearer(tokens["officer_b1"])
        )
        assert response.status_code == 400

    def test_customer_cannot_apply_for_someone_else(self, client, tokens):
        response = client.post("/loans", json=APPLICATION, headers=bearer(tokens["customer_c1002"]))
        assert response.status_code == 403

    def test_full_lifecycle(self, client, tokens):
        loan_id = apply_loan(client, tokens["officer_b1"])
        manager = bearer(tokens["manager_b1"])

        response = client.post(f"/loans/{loan_id}/approve", json={"comments": "OK"}, headers=manager)
        assert response.status_code == 200
        assert response.json()["loan_status"] == "APPROVED"

        response = client.post(f"/loans/{loan_id}/disburse", json={}, headers=manager)
        assert response.status_code == 200
        assert response.json()["loan_status"] == "ACTIVE"

        response = client.post(f"/loans/{loan_id}/repay", json={"amount": "8884.88"}, headers=manager)
        assert response.status_code == 200
        assert response.json()["amount"] == "8884.88"
        assert response.json()["transaction_type"] == "WITHDRAWAL"

        statement = client.get(f"/loans/{loan_id}/statement", headers=manager).json()
        assert statement["installments_paid"] == 1
        assert statement["installments_pending"] == 11
        assert statement["outstanding_balance"] == "92115.12"

        response = client.post(f"/loans/{loan_id}/foreclose", json={}, headers=manager)
        assert response.status_code == 200
        assert response.json()["loan_status"] == "CLOSED"
        assert response.json()["outstanding_balance"] == "0.00"

    def test_approve_twice_is_a_business_rule_error(self, client, tokens):
        loan_id = apply_loan(client, tokens["officer_b1"])
        manager = bearer(tokens["manager_b1"])
        client.post(f"/loans/{loan_id}/approve", json={}, headers=manager)

        response = client.post(f"/loans/{loan_id}/approve", json={}, headers=manager)
        assert response.status_code == 422

    def test_approve_with_out_of_range_rate(self, client, tokens):
        loan_id = apply_loan(client, tokens["officer_b1"])
        response = client.post(
            f"/loans/{loan_id}/approve", json={"interest_rate": "40.00"},
            headers=bearer(tokens["manager_b1"])
        )
        assert response.status_code == 400

    def test_double_disbursement_conflicts(self, client, tokens):
        loan_id = activate_loan(client, tokens)
        response = client.post(f"/loans/{loan_id}/disburse", json={}, headers=bearer(tokens["manager_b1"]))
        assert response.status_code == 409

    def test_reject(self, client, tokens):
        loan_id = apply_loan(client, tokens["officer_b1"])
        response = client.post(
            f"/loans/{loan_id}/reject", json={"rejection_reason": "Incomplete documents"},
            headers=bearer(tokens["manager_b1"])
        )
        assert response.status_code == 200
        assert response.json()["approval_status"] == "REJECTED"
        assert response.json()["loan_status"] == "APPLICATION"

        history = client.get(f"/loans/{loan_id}/approval-history", headers=bearer(tokens["admin"])).json()
        assert history["loan_id"] == loan_id
        assert [h["decision"] for h in history["history"]] == ["PENDING", "REJECTED"]

    def test_overpayment_rejected(self, client, tokens):
        loan_id = activate_loan(client, tokens)
        response = client.post(
            f"/loans/{loan_id}/repay", json={"amount": "200000.00"},
            headers=bearer(tokens["manager_b1"])
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Repayment amount exceeds outstanding balance"

    def test_repay_with_bad_date(self, client, tokens):
        loan_id = activate_loan(client, tokens)
        response = client.post(
            f"/loans/{loan_id}/repay", json={"amount": "100.00", "payment_date": "yesterday"},
            headers=bearer(tokens["manager_b1"])
        )
        assert response.status_code == 400

    def test_unknown_loan(self, client, tokens):
        response = client.get("/loans/L000", headers=bearer(tokens["admin"]))
        assert response.status_code == 404

    def test_other_branch_is_forbidden(self, client, tokens):
        loan_id = apply_loan(client, tokens["officer_b1"])
        response = client.get(f"/loans/{loan_id}", headers=bearer(tokens["officer_b2"]))
        assert response.status_code == 403


class TestQueryEndpoints:

    def test_list_is_role_filtered(self, client, tokens):
        apply_loan(client, tokens["officer_b1"])
        apply_loan(client, tokens["admin"], customer_id="C1002", account_number="ACC1002")

        admin = client.get("/loans", headers=bearer(tokens["admin"])).json()
        assert admin["total_count"] == 2
        assert admin["page_number"] == 1

        b2 = client.get("/loans", headers=bearer(tokens["officer_b2"])).json()
        assert [l["customer_id"] for l in b2["loans"]] == ["C1002"]

        customer = client.get("/loans", headers=bearer(tokens["customer_c1001"])).json()
        assert [l["customer_id"] for l in customer["loans"]] == ["C1001"]

    def test_list_paging(self, client, tokens):
        for _ in range(3):
            apply_loan(client, tokens["admin"])

        page = client.get("/loans?page=2&size=2", headers=bearer(tokens["admin"])).json()
        assert len(page["loans"]) == 1
        assert page["total_pages"] == 2

        response = client.get("/loans?page=0", headers=bearer(tokens["admin"]))
        assert response.status_code == 422

    def test_search(self, client, tokens):
        apply_loan(client, tokens["admin"])
        apply_loan(client, tokens["admin"], loan_type="EDUCATION")

        response = client.post(
            "/loans/search", json={"loan_type": "EDUCATION", "page_number": 0},
            headers=bearer(tokens["admin"])
        )
        assert response.status_code == 200
        assert [l["loan_type"] for l in response.json()["loans"]] == ["EDUCATION"]

        response = client.post("/loans/search", json={"loan_status": "NOPE"}, headers=bearer(tokens["admin"]))
        assert response.status_code == 400

    def test_pending_approvals(self, client, tokens):
        apply_loan(client, tokens["officer_b1"])

        response = client.get("/loans/pending-approvals", headers=bearer(tokens["manager_b1"]))
        assert response.json()["count"] == 1

        response = client.get("/loans/pending-approvals", headers=bearer(tokens["customer_c1001"]))
        assert response.status_code == 403

    def test_customer_loans(self, client, tokens):
        apply_loan(client, tokens["officer_b1"])

        response = client.get("/loans/customer/C1001", headers=bearer(tokens["customer_c1001"]))
        assert response.status_code == 200
        assert len(response.json()["loans"]) == 1

        response = client.get("/loans/customer/C1001", headers=bearer(tokens["customer_c1002"]))
        assert response.status_code == 403

        response = client.get("/loans/customer/C9999", headers=bearer(tokens["admin"]))
        assert response.status_code == 404

    def test_default_sweep(self, client, tokens):
        activate_loan(client, tokens)

        response = client.post("/loans/default-sweep", headers=bearer(tokens["admin"]))
        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert response.json()["defaulted"] == 0

        response = client.post("/loans/default-sweep", headers=bearer(tokens["customer_c1001"]))
        assert response.status_code == 403
