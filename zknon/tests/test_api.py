"""
HTTP API Tests

Tests cover:
1. Identifier issuance and listing
2. Deposits, including legacy field names
3. Withdrawal receipts and terminal states
4. Error payloads and status codes
"""

import runpy
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import OTHER_OWNER, OWNER, POOL_ADDRESS, RECIPIENT, FakeSettlementClient
from zknon.api import create_app
from zknon.config import Settings
from zknon.service import LedgerService
from zknon.settlement import SettlementError
from zknon.storage import InMemoryStorage


def make_client(settlement=None) -> tuple[TestClient, LedgerService]:
    service = LedgerService(storage=InMemoryStorage(), settlement=settlement)
    app = create_app(Settings(), service=service)
    return TestClient(app), service


@pytest.fixture
def api(settlement):
    client, service = make_client(settlement)
    with client:
        yield client, service


def issue(client: TestClient, owner: str = OWNER) -> dict:
    response = client.post("/api/zkproofs/generate", json={"ownerKey": owner})
    assert response.status_code == 201
    return response.json()


def deposit(client: TestClient, identifier: str, amount, owner: str = OWNER):
    return client.post(
        "/api/deposits",
        json={"ownerKey": owner, "identifier": identifier, "amount": amount, "settlementRef": "depositSig"},
    )


class TestProofEndpoints:
    """Tests for issuance and listing."""

    def test_health(self, api):
        client, _ = api

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "poolAddress": POOL_ADDRESS}

    def test_generate_returns_identifier_and_note(self, api):
        client, _ = api

        body = issue(client)

        assert body["identifier"].startswith("ZKP-")
        assert len(body["secretNote"]) == 64

    def test_generate_accepts_legacy_field(self, api):
        client, service = api

        response = client.post("/api/zkproofs/generate", json={"walletPubkey": OWNER})

        assert response.status_code == 201
        assert response.json()["identifier"] in service.storage.ledger_entries

    def test_generate_requires_owner(self, api):
        client, _ = api

        response = client.post("/api/zkproofs/generate", json={})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "VALIDATION_ERROR"

    def test_list_proofs(self, api):
        """Listing shows total, spent and balance per identifier of one wallet."""
        client, _ = api
        funded = issue(client)
        deposit(client, funded["identifier"], 2.5)
        issue(client, OTHER_OWNER)

        response = client.get("/api/zkproofs", params={"wallet": OWNER})

        assert response.status_code == 200
        proofs = response.json()["proofs"]
        assert len(proofs) == 1
        assert proofs[0]["identifier"] == funded["identifier"]
        assert proofs[0]["total"] == 2.5
        assert proofs[0]["spent"] == 0
        assert proofs[0]["balance"] == 2.5
        assert "createdAt" in proofs[0]

    def test_list_requires_wallet(self, api):
        client, _ = api

        response = client.get("/api/zkproofs")

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "VALIDATION_ERROR"


class TestDepositEndpoint:
    """Tests for POST /api/deposits."""

    def test_deposit_credits_balance(self, api):
        client, _ = api
        issued = issue(client)

        response = deposit(client, issued["identifier"], 40)

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "identifier": issued["identifier"],
            "balance": 40,
            "total": 40,
            "spent": 0,
        }

    def test_deposit_accepts_legacy_fields(self, api):
        client, _ = api
        issued = issue(client)

        response = client.post(
            "/api/deposits",
            json={"walletPubkey": OWNER, "zkProofId": issued["identifier"], "amount": 1, "txSignature": "legacySig"},
        )

        assert response.status_code == 200
        history = client.get("/api/history", params={"wallet": OWNER}).json()["history"]
        assert history[0]["settlementRef"] == "legacySig"

    def test_deposit_unknown_identifier(self, api):
        client, _ = api

        response = deposit(client, "ZKP-0000000000000000", 1)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NOT_FOUND"

    def test_deposit_wrong_owner(self, api):
        client, _ = api
        issued = issue(client)

        response = deposit(client, issued["identifier"], 1, owner=OTHER_OWNER)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "OWNERSHIP_MISMATCH"

    @pytest.mark.parametrize("amount", [0, -1, "ten"])
    def test_deposit_invalid_amount(self, api, amount):
        client, _ = api
        issued = issue(client)

        response = deposit(client, issued["identifier"], amount)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "VALIDATION_ERROR"


class TestWithdrawalEndpoint:
    """Tests for POST /api/withdrawals."""

    def withdraw(self, client, issued, amount, recipient=RECIPIENT, note=None):
        return client.post(
            "/api/withdrawals",
            json={
                "identifier": issued["identifier"],
                "secretNote": note or issued["secretNote"],
                "amount": amount,
                "recipient": recipient,
            },
        )

    def test_withdrawal_returns_pending_receipt(self, api):
        """The receipt comes back PENDING and history later shows CONFIRMED."""
        client, service = api
        issued = issue(client)
        deposit(client, issued["identifier"], 100)

        response = self.withdraw(client, issued, 100)

        assert response.status_code == 200
        receipt = response.json()
        assert receipt["status"] == "PENDING"
        assert isinstance(receipt["transactionId"], int)

        client.portal.call(service.withdrawals.drain)

        history = client.get("/api/history", params={"wallet": OWNER}).json()["history"]
        withdrawal = next(item for item in history if item["id"] == receipt["transactionId"])
        assert withdrawal["kind"] == "WITHDRAW"
        assert withdrawal["status"] == "CONFIRMED"
        assert withdrawal["settlementRef"] == "sig-confirmed-1"
        assert withdrawal["recipient"] == RECIPIENT
        assert withdrawal["amount"] == 100

        proofs = client.get("/api/zkproofs", params={"wallet": OWNER}).json()["proofs"]
        assert proofs[0]["balance"] == 0
        assert proofs[0]["spent"] == 100

    def test_failed_payout_is_visible_in_history(self):
        client, service = make_client(FakeSettlementClient(error=SettlementError("rejected")))
        with client:
            issued = issue(client)
            deposit(client, issued["identifier"], 10)
            receipt = self.withdraw(client, issued, 4).json()

            client.portal.call(service.withdrawals.drain)

            history = client.get("/api/history", params={"wallet": OWNER}).json()["history"]
            withdrawal = next(item for item in history if item["id"] == receipt["transactionId"])
            assert withdrawal["status"] == "FAILED"
            proofs = client.get("/api/zkproofs", params={"wallet": OWNER}).json()["proofs"]
            assert proofs[0]["balance"] == 10

    def test_legacy_note_field(self, api):
        client, _ = api
        issued = issue(client)
        deposit(client, issued["identifier"], 5)

        response = client.post(
            "/api/withdrawals",
            json={"zkProofId": issued["identifier"], "note": issued["secretNote"], "amount": 1, "recipient": RECIPIENT},
        )

        assert response.status_code == 200

    def test_wrong_note(self, api):
        client, _ = api
        issued = issue(client)
        deposit(client, issued["identifier"], 5)

        response = self.withdraw(client, issued, 1, note="00" * 32)

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "INVALID_NOTE"

    def test_insufficient_balance(self, api):
        client, _ = api
        issued = issue(client)
        deposit(client, issued["identifier"], 5)

        response = self.withdraw(client, issued, 6)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "INSUFFICIENT_BALANCE"
        assert detail["details"]["available"] == "5"

    def test_invalid_recipient(self, api):
        client, _ = api
        issued = issue(client)
        deposit(client, issued["identifier"], 5)

        response = self.withdraw(client, issued, 1, recipient=POOL_ADDRESS)

        assert response.status_code == 400

    def test_settlement_not_configured(self):
        client, _ = make_client(settlement=None)
        with client:
            issued = issue(client)
            deposit(client, issued["identifier"], 5)

            response = self.withdraw(client, issued, 1)

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "SETTLEMENT_NOT_CONFIGURED"


class TestHistoryEndpoint:
    """Tests for GET /api/history."""

    def test_history_newest_first(self, api):
        client, _ = api
        issued = issue(client)
        for amount in (1, 2, 3):
            deposit(client, issued["identifier"], amount)

        history = client.get("/api/history", params={"wallet": OWNER}).json()["history"]

        assert [item["amount"] for item in history] == [3, 2, 1]
        assert all(item["identifier"] == issued["identifier"] for item in history)

    def test_history_requires_wallet(self, api):
        client, _ = api

        response = client.get("/api/history", params={"wallet": ""})

        assert response.status_code == 400

    def test_shutdown_closes_settlement(self, settlement):
        client, _ = make_client(settlement)
        with client:
            client.get("/health")

        assert settlement.closed


class TestServerlessHandler:
    """Tests for the Lambda entry point."""

    def test_handler_settles_inline_without_lifespan(self):
        from mangum import Mangum

        namespace = runpy.run_path(str(Path(__file__).resolve().parents[2] / "api" / "index.py"))

        assert isinstance(namespace["handler"], Mangum)
        assert namespace["app"].state.service.withdrawals.settle_inline

    def test_inline_withdrawal_returns_terminal_status(self, settlement):
        service = LedgerService(storage=InMemoryStorage(), settlement=settlement, settle_inline=True)
        client = TestClient(create_app(Settings(), service=service))
        with client:
            issued = issue(client)
            deposit(client, issued["identifier"], 3)

            response = client.post(
                "/api/withdrawals",
                json={
                    "identifier": issued["identifier"],
                    "secretNote": issued["secretNote"],
                    "amount": 3,
                    "recipient": RECIPIENT,
                },
            )

            assert response.status_code == 200
            assert response.json()["status"] == "CONFIRMED"
            assert service.withdrawals.in_flight == 0
