"""
Integration Tests for luna_deposits/api/routes/deposits.py

Tests for deposit API endpoints
"""

import pytest

from conftest import TRON_DEPOSIT_ADDRESS, tx_hash
from luna_deposits.chains.assets import Network
from luna_deposits.services.wallet import WalletLedger


def create_deposit(client, amount="50", asset="usdt_trc20", user_id=1, **extra):
    payload = {"user_id": user_id, "amount": amount, "asset": asset, **extra}
    return client.post("/deposits", json=payload)


@pytest.mark.integration
def test_create_deposit_returns_quote(test_client):
    response = create_deposit(test_client, amount="50")

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["amount"] == "50.000000"
    assert data["asset"] == "usdt_trc20"
    assert data["network"] == "tron"
    assert data["destination_address"] == TRON_DEPOSIT_ADDRESS
    assert data["fiat_equivalent"] == "50.00"
    assert data["fiat_currency"] == "usd"
    assert data["rate_source"] == "remote"

    descriptor = data["payment_descriptor"]
    assert descriptor["address"] == TRON_DEPOSIT_ADDRESS
    assert descriptor["amount"] == "50.000000"
    assert descriptor["memo"] == data["intent_id"]
    assert descriptor["uri"].startswith("fake:")


@pytest.mark.integration
def test_create_deposit_with_idempotency_key(test_client):
    first = create_deposit(test_client, idempotency_key="order-77")
    second = create_deposit(test_client, idempotency_key="order-77")

    assert first.status_code == second.status_code == 201
    assert first.json()["intent_id"] == second.json()["intent_id"]


@pytest.mark.integration
@pytest.mark.parametrize("amount, asset, fragment", [
    ("0.5", "usdt_trc20", "Minimum USDT deposit"),
    ("1.1234567", "usdt_trc20", "at most 6 decimal places"),
    ("0", "eth", "must be positive"),
    ("10", "doge", "Unsupported asset"),
])
def test_create_deposit_rejects_invalid_requests(test_client, amount, asset, fragment):
    response = create_deposit(test_client, amount=amount, asset=asset)

    assert response.status_code == 400
    data = response.json()
    assert data["error"]["code"] == "INVALID_DEPOSIT"
    assert fragment in data["detail"]

    listing = test_client.get("/deposits", params={"user_id": 1})
    assert listing.json()["total"] == 0


@pytest.mark.integration
def test_create_deposit_refuses_json_number_amount(test_client):
    response = test_client.post("/deposits", json={"user_id": 1, "amount": 50.5, "asset": "eth"})
    assert response.status_code == 422


@pytest.mark.integration
def test_get_deposit(test_client):
    intent_id = create_deposit(test_client, amount="12.5").json()["intent_id"]

    response = test_client.get(f"/deposits/{intent_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["intent_id"] == intent_id
    assert data["amount"] == "12.500000"
    assert data["transaction_reference"] is None
    assert data["settled_at"] is None


@pytest.mark.integration
def test_get_unknown_deposit(test_client):
    response = test_client.get("/deposits/does-not-exist")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "INTENT_NOT_FOUND"


@pytest.mark.integration
def test_verify_settles_deposit(test_client, chain_clients):
    intent_id = create_deposit(test_client, amount="50").json()["intent_id"]
    chain_clients[Network.TRON].finalize(tx_hash(1), 50_000_000, TRON_DEPOSIT_ADDRESS)

    response = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": tx_hash(1),
    })

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "settled"
    assert data["credited_amount"] == "50.000000"
    assert data["transaction_reference"] == tx_hash(1)

    intent = test_client.get(f"/deposits/{intent_id}").json()
    assert intent["status"] == "settled"
    assert intent["received_amount"] == "50.000000"
    assert intent["settled_at"] is not None


@pytest.mark.integration
def test_verify_pending_until_final(test_client):
    intent_id = create_deposit(test_client).json()["intent_id"]

    response = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": tx_hash(2),
    })

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "pending"
    assert data["reason"] == "transaction not found"
    assert data["credited_amount"] is None


@pytest.mark.integration
def test_verify_unknown_intent(test_client):
    response = test_client.post("/deposits/verify", json={
        "intent_id": "missing",
        "transaction_reference": tx_hash(3),
    })
    assert response.status_code == 404


@pytest.mark.integration
def test_verify_malformed_reference(test_client):
    intent_id = create_deposit(test_client).json()["intent_id"]

    response = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": "xyz",
    })

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_DEPOSIT"


@pytest.mark.integration
def test_verify_duplicate_transaction(test_client, chain_clients):
    first_id = create_deposit(test_client).json()["intent_id"]
    second_id = create_deposit(test_client).json()["intent_id"]
    chain_clients[Network.TRON].finalize(tx_hash(4), 50_000_000, TRON_DEPOSIT_ADDRESS)

    test_client.post("/deposits/verify", json={"intent_id": first_id, "transaction_reference": tx_hash(4)})
    response = test_client.post("/deposits/verify", json={
        "intent_id": second_id,
        "transaction_reference": tx_hash(4),
    })

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "DUPLICATE_TRANSACTION"
    assert error["details"]["intent_id"] == second_id

    balances = test_client.get("/wallet/1/balances").json()["balances"]
    assert [b["balance"] for b in balances] == ["50.000000"]


@pytest.mark.integration
def test_verify_reference_conflict(test_client):
    intent_id = create_deposit(test_client).json()["intent_id"]
    test_client.post("/deposits/verify", json={"intent_id": intent_id, "transaction_reference": tx_hash(5)})

    response = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": tx_hash(6),
    })

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "REFERENCE_CONFLICT"


@pytest.mark.integration
def test_verify_settlement_failure_is_retryable(test_client, chain_clients, monkeypatch):
    intent_id = create_deposit(test_client).json()["intent_id"]
    chain_clients[Network.TRON].finalize(tx_hash(7), 50_000_000, TRON_DEPOSIT_ADDRESS)

    def broken_credit(self, *args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(WalletLedger, "credit", broken_credit)
    response = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": tx_hash(7),
    })

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "SETTLEMENT_UNAVAILABLE"
    assert error["details"] == {"intent_id": intent_id, "status": "pending"}
    assert test_client.get(f"/deposits/{intent_id}").json()["status"] == "pending"

    monkeypatch.undo()
    retry = test_client.post("/deposits/verify", json={
        "intent_id": intent_id,
        "transaction_reference": tx_hash(7),
    })
    assert retry.json()["status"] == "settled"


@pytest.mark.integration
def test_list_deposits_by_user_and_status(test_client, chain_clients):
    settled_id = create_deposit(test_client, user_id=9).json()["intent_id"]
    create_deposit(test_client, user_id=9, amount="75")
    create_deposit(test_client, user_id=10)
    chain_clients[Network.TRON].finalize(tx_hash(8), 50_000_000, TRON_DEPOSIT_ADDRESS)
    test_client.post("/deposits/verify", json={"intent_id": settled_id, "transaction_reference": tx_hash(8)})

    everything = test_client.get("/deposits", params={"user_id": 9}).json()
    settled = test_client.get("/deposits", params={"user_id": 9, "status": "settled"}).json()

    assert everything["total"] == 2
    assert settled["total"] == 1
    assert settled["intents"][0]["intent_id"] == settled_id


@pytest.mark.integration
def test_list_deposits_rejects_unknown_status(test_client):
    response = test_client.get("/deposits", params={"user_id": 1, "status": "refunded"})
    assert response.status_code == 422


@pytest.mark.integration
def test_get_rates(test_client):
    response = test_client.get("/deposits/rates")

    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "remote"
    assert data["fiat_currency"] == "usd"
    assert data["rates"] == {"usdt_trc20": "1.0", "bnb_bsc": "600.5", "eth": "2500"}


@pytest.mark.integration
def test_get_fee_estimate(test_client):
    response = test_client.get("/deposits/fees/eth")

    assert response.status_code == 200
    data = response.json()
    assert data["asset"] == "eth"
    assert data["network"] == "ethereum"
    assert data["fee_symbol"] == "ETH"
    assert data["fee"] == "0.000000000001000000"
    assert data["estimated"] is True


@pytest.mark.integration
def test_get_fee_estimate_unknown_asset(test_client):
    response = test_client.get("/deposits/fees/doge")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_DEPOSIT"
