"""
API Tests for the reconciliation endpoints

End-to-end through the FastAPI app with an in-memory chain node:
- POST /onramp/initiate
- POST /webhook/deposit (success, replay, failure, timeout, signature)
- POST /register/offramp
- Ledger listings and processed flags
- Settlement lookup and retry
- Health checks

Run with: pytest tests/test_reconciliation_api.py -v
"""

import hashlib
import hmac
import json
from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from core.context import build_context
from database.ledger_store import RecordKind
from server import create_app

from tests.fakes import USER_ADDRESS, FakeBankingProvider, FakeChainClient


@asynccontextmanager
async def api_client(settings, chain=None):
    chain = chain or FakeChainClient()
    context = await build_context(settings, chain=chain, banking_provider=FakeBankingProvider())
    app = create_app(settings, context)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client, context
    finally:
        await context.close()


async def initiate(client) -> str:
    response = await client.post("/onramp/initiate", json={"userAddress": USER_ADDRESS})
    assert response.status_code == 200
    return response.json()["onrampId"]


def deposit_payload(onramp_id: str, bank_reference: str = "B1", amount: int = 50) -> dict:
    return {
        "bankReference": bank_reference,
        "userAddress": USER_ADDRESS,
        "amount": amount,
        "onrampId": onramp_id,
    }


class TestOnrampEndpoints:

    @pytest.mark.asyncio
    async def test_initiate(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.post("/onramp/initiate", json={"userAddress": USER_ADDRESS})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["onrampId"].startswith("0x")
        assert data["virtualAccount"]
        assert data["bankName"] == "TEST BANK"
        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_initiate_missing_address(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.post("/onramp/initiate", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_parameter"
        assert response.json()["parameter"] == "userAddress"

    @pytest.mark.asyncio
    async def test_initiate_malformed_address(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.post("/onramp/initiate", json={"userAddress": "0xAAA"})

        assert response.status_code == 400
        assert response.json()["parameter"] == "userAddress"

    @pytest.mark.asyncio
    async def test_onramp_status(self, test_settings):
        async with api_client(test_settings) as (client, _):
            onramp_id = await initiate(client)
            response = await client.get(f"/onramp/{onramp_id}")
            missing = await client.get(f"/onramp/0x{'00' * 32}")

        assert response.status_code == 200
        assert response.json()["state"] == "INITIATED"
        assert missing.status_code == 404


class TestDepositWebhook:

    @pytest.mark.asyncio
    async def test_end_to_end_success(self, test_settings):
        async with api_client(test_settings) as (client, _):
            onramp_id = await initiate(client)

            response = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))
            deposits = (await client.get("/deposits")).json()

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["depositId"]
        assert data["txHash"].startswith("0x")

        assert len(deposits) == 1
        assert deposits[0]["amount"] == 50
        assert deposits[0]["onrampId"] == onramp_id

    @pytest.mark.asyncio
    async def test_settlement_failure_keeps_deposit(self, test_settings):
        chain = FakeChainClient()
        chain.receipt_status = 0

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)

            response = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))
            deposits = (await client.get("/deposits")).json()

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "settlement_failed"
        assert data["depositId"] == deposits[0]["id"]
        assert deposits[0]["amount"] == 50

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, test_settings):
        chain = FakeChainClient()
        chain.receipt_timeout = True

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)
            response = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))

        assert response.status_code == 504
        assert response.json()["error"] == "settlement_timeout"
        assert response.json()["txHash"] == chain.sent[0]

    @pytest.mark.asyncio
    async def test_replay_returns_existing_deposit(self, test_settings):
        chain = FakeChainClient()

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)
            first = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))
            second = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))

        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["depositId"] == first.json()["depositId"]
        assert second.json()["settlementStatus"] == "SETTLED"
        assert len(chain.built) == 1

    @pytest.mark.asyncio
    async def test_replay_of_failed_deposit_reports_failure(self, test_settings):
        chain = FakeChainClient()
        chain.receipt_status = 0

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)
            await client.post("/webhook/deposit", json=deposit_payload(onramp_id))
            replay = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))

        assert replay.status_code == 200
        assert replay.json()["replayed"] is True
        assert replay.json()["success"] is False
        assert replay.json()["settlementStatus"] == "FAILED"

    @pytest.mark.asyncio
    async def test_amount_beyond_uint256_is_bad_request(self, test_settings):
        chain = FakeChainClient()

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)
            response = await client.post(
                "/webhook/deposit", json=deposit_payload(onramp_id, amount=2 ** 255)
            )
            deposits = (await client.get("/deposits")).json()

        assert response.status_code == 400
        assert response.json()["parameter"] == "amount"
        assert deposits == []
        assert chain.built == []

    @pytest.mark.asyncio
    async def test_unknown_onramp_is_bad_request(self, test_settings):
        chain = FakeChainClient()

        async with api_client(test_settings, chain) as (client, _):
            response = await client.post(
                "/webhook/deposit", json=deposit_payload("0x" + "12" * 32)
            )

        assert response.status_code == 400
        assert response.json()["error"] == "not_found"
        assert chain.built == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("amount", "lots"),
        ("amount", 0),
        ("bankReference", ""),
    ])
    async def test_invalid_payload(self, test_settings, field, value):
        async with api_client(test_settings) as (client, _):
            onramp_id = await initiate(client)
            payload = deposit_payload(onramp_id)
            payload[field] = value

            response = await client.post("/webhook/deposit", json=payload)

        assert response.status_code == 400
        assert response.json()["parameter"] == field

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(self, test_settings):
        settings = test_settings.model_copy(update={"BANKING_WEBHOOK_SECRET": "s3cret"})

        async with api_client(settings) as (client, _):
            onramp_id = await initiate(client)
            body = json.dumps(deposit_payload(onramp_id)).encode()
            signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

            unsigned = await client.post(
                "/webhook/deposit", content=body, headers={"Content-Type": "application/json"}
            )
            forged = await client.post(
                "/webhook/deposit", content=body,
                headers={"Content-Type": "application/json", "X-Webhook-Signature": "00" * 32}
            )
            signed = await client.post(
                "/webhook/deposit", content=body,
                headers={"Content-Type": "application/json", "X-Webhook-Signature": signature}
            )

        assert unsigned.status_code == 401
        assert forged.status_code == 401
        assert signed.status_code == 200


class TestSettlementEndpoints:

    @pytest.mark.asyncio
    async def test_settlement_lookup_and_retry(self, test_settings):
        chain = FakeChainClient()
        chain.receipt_status = 0

        async with api_client(test_settings, chain) as (client, _):
            onramp_id = await initiate(client)
            failed = await client.post("/webhook/deposit", json=deposit_payload(onramp_id))
            deposit_id = failed.json()["depositId"]

            before = await client.get(f"/deposits/{deposit_id}/settlement")
            chain.receipt_status = 1
            chain.sent.clear()
            retried = await client.post(f"/deposits/{deposit_id}/retry")
            after = await client.get(f"/deposits/{deposit_id}/settlement")

        assert before.json()["status"] == "FAILED"
        assert retried.status_code == 200
        assert retried.json()["settlementStatus"] == "SETTLED"
        assert after.json()["status"] == "SETTLED"

    @pytest.mark.asyncio
    async def test_unknown_deposit(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.get("/deposits/missing/settlement")
            retry = await client.post("/deposits/missing/retry")

        assert response.status_code == 404
        assert retry.status_code == 404


class TestLedgerEndpoints:

    @pytest.mark.asyncio
    async def test_offramp_registration_listed(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.post(
                "/register/offramp", json={"userAddress": USER_ADDRESS, "bankAccount": "12345678"}
            )
            offramps = (await client.get("/offramps")).json()

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert offramps[0]["offRampId"] == response.json()["offRampId"]

    @pytest.mark.asyncio
    async def test_offramp_missing_bank_account(self, test_settings):
        async with api_client(test_settings) as (client, _):
            response = await client.post("/register/offramp", json={"userAddress": USER_ADDRESS})

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/deposits", "/onramp_requests", "/offramps", "/withdrawals", "/bridges"])
    async def test_listings_start_empty(self, test_settings, path):
        async with api_client(test_settings) as (client, _):
            response = await client.get(path)

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_processed_requires_internal_key(self, test_settings):
        settings = test_settings.model_copy(update={"INTERNAL_API_KEY": "internal-key"})

        async with api_client(settings) as (client, context):
            await context.store.put(RecordKind.WITHDRAWAL, {
                "id": "w1",
                "user_address": USER_ADDRESS,
                "amount": 5,
                "offramp_id": "0x" + "01" * 32,
                "processed": False,
            })

            denied = await client.post("/withdrawals/w1/processed")
            first = await client.post("/withdrawals/w1/processed", headers={"X-Internal-Api-Key": "internal-key"})
            second = await client.post("/withdrawals/w1/processed", headers={"X-Internal-Api-Key": "internal-key"})
            missing = await client.post("/bridges/b1/processed", headers={"X-Internal-Api-Key": "internal-key"})
            withdrawals = (await client.get("/withdrawals")).json()

        assert denied.status_code == 401
        assert first.json()["changed"] is True
        assert second.status_code == 200
        assert second.json()["changed"] is False
        assert missing.status_code == 404
        assert withdrawals[0]["processed"] is True


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, test_settings):
        async with api_client(test_settings) as (client, _):
            live = await client.get("/health/live")
            ready = await client.get("/health/ready")
            health = await client.get("/health")

        assert live.json()["status"] == "alive"
        assert ready.json()["status"] == "ready"
        assert health.status_code == 200
        assert health.json()["checks"]["database"]["status"] == "connected"
        assert health.json()["checks"]["chain"]["block"] == 100
