"""
Tests for the HTTP surface.
"""

from datetime import date

import pytest
from fastapi.testclient import TestClient

from tesouraria.db import get_session_factory, init_engine, reset_engine, session_scope
from tesouraria.models import LedgerTransaction, StatementLine
from tesouraria.stores import LedgerStore

DAY = date(2024, 3, 10)
OPERATOR = {"X-User-Id": "op-1"}
CONFERENTE = {"X-User-Id": "conf-1", "X-Conferente": "true"}


@pytest.fixture
def client():
    init_engine("sqlite://")
    from tesouraria.main import app

    with TestClient(app) as test_client:
        yield test_client
    reset_engine()


@pytest.fixture
def ledger(client):
    with session_scope(get_session_factory()) as session:
        store = LedgerStore(session)
        for i, amount in enumerate((5000, 5000, 10000), start=1):
            store.add_statement_line(StatementLine(
                id=f"s{i}",
                org_id="org-1",
                account_id="acc-1",
                transaction_date=DAY,
                amount_cents=amount,
                description="DEPOSITO OFERTA",
            ))
        store.add_transaction(LedgerTransaction(
            id="t1",
            org_id="org-1",
            account_id="acc-1",
            transaction_date=DAY,
            amount_cents=20000,
            description="Oferta culto",
        ))


SCOPE = {
    "org_id": "org-1",
    "account_id": "acc-1",
    "period_start": "2024-03-01",
    "period_end": "2024-03-31",
}


class TestReconciliationEndpoints:
    """Regenerate, accept and undo over HTTP."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["timestamp"].endswith("+00:00")

    def test_regenerate_accept_undo(self, client, ledger):
        response = client.post("/api/reconciliation/suggestions/regenerate", json=SCOPE, headers=OPERATOR)
        assert response.status_code == 200
        body = response.json()
        assert body["generated"] == 1
        suggestion = body["suggestions"][0]
        assert suggestion["shape"] == "batch"

        response = client.post(
            f"/api/reconciliation/suggestions/{suggestion['id']}/accept", headers=OPERATOR
        )
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        response = client.post(
            "/api/reconciliation/transactions/t1/desconciliar",
            json={"reason": "wrong deposit"},
            headers=OPERATOR,
        )
        assert response.status_code == 200
        assert response.json()["batch_lines_released"] == 3
        assert response.json()["batches_removed"] == 1

    def test_unknown_suggestion_is_404(self, client):
        response = client.post("/api/reconciliation/suggestions/nope/accept", headers=OPERATOR)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    def test_missing_identity_rejected(self, client):
        response = client.post("/api/reconciliation/suggestions/nope/accept")
        assert response.status_code == 422

    def test_invalid_scope_is_400(self, client):
        scope = {**SCOPE, "period_start": "2024-04-01"}
        response = client.post("/api/reconciliation/suggestions/preview", json=scope)
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SCOPE"

    def test_manual_mismatch_is_422(self, client, ledger):
        response = client.post(
            "/api/reconciliation/manual",
            json={
                "org_id": "org-1",
                "shape": "batch",
                "statement_ids": ["s1", "s2"],
                "transaction_ids": ["t1"],
            },
            headers=OPERATOR,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestCountingEndpoints:
    """Counting session workflow over HTTP."""

    def test_full_session(self, client):
        response = client.post(
            "/api/counting/sessions",
            json={"org_id": "org-1", "service_date": "2024-03-10", "period": "manha"},
            headers=OPERATOR,
        )
        assert response.status_code == 200
        session_id = response.json()["id"]

        for counter in ("ana", "bruno"):
            response = client.post(
                f"/api/counting/sessions/{session_id}/counts",
                json={"values_by_category": {"dinheiro": "250.00"}},
                headers={"X-User-Id": counter},
            )
            assert response.status_code == 200

        response = client.post(f"/api/counting/sessions/{session_id}/confront", headers=OPERATOR)
        assert response.json()["status"] == "validated"

        response = client.post(f"/api/counting/sessions/{session_id}/finalize", headers=OPERATOR)
        assert response.status_code == 403

        response = client.post(f"/api/counting/sessions/{session_id}/finalize", headers=CONFERENTE)
        assert response.status_code == 200
        assert response.json()["status"] == "closed"

        response = client.get("/api/counting/sync-window", params={"org_id": "org-1"})
        assert response.json()["last_closed_session_id"] == session_id

    def test_invalid_count_is_422(self, client):
        response = client.post(
            "/api/counting/sessions",
            json={"org_id": "org-1", "service_date": "2024-03-10", "period": "noite"},
            headers=OPERATOR,
        )
        session_id = response.json()["id"]

        response = client.post(
            f"/api/counting/sessions/{session_id}/counts",
            json={"values_by_category": {"dinheiro": "dez reais"}},
            headers={"X-User-Id": "ana"},
        )
        assert response.status_code == 422
        assert response.json()["field"] == "dinheiro"
