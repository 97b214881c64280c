"""Unit tests for EscrowPayClient."""

import json

import httpx
import pytest

from src.escrowpay.errors import EscrowPayError, IntentStale, TokenNotFound
from src.escrowpay_sdk.client import EscrowPayClient
from src.models import ReleaseRule

PYUSD = "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8"
PAYEE = "0x4444444444444444444444444444444444444444"


def _client(handler) -> EscrowPayClient:
    client = EscrowPayClient(base_url="http://escrow.test/")
    client._http = httpx.AsyncClient(base_url=client.base_url, transport=httpx.MockTransport(handler))
    return client


@pytest.mark.asyncio
async def test_create_escrow_sends_wire_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"id": "esc-1", "escrowAddress": None, "chainId": 42161, "checkoutUrl": "/checkout/esc-1"},
        )

    async with _client(handler) as client:
        created = await client.create_escrow(
            token_addr=PYUSD, amount="25000000", payee=PAYEE, rule=ReleaseRule(type="delivery")
        )

    assert seen["path"] == "/api/escrows"
    assert seen["body"] == {
        "tokenAddr": PYUSD,
        "amount": "25000000",
        "payee": PAYEE,
        "rule": {"type": "delivery"},
    }
    assert created.id == "esc-1"
    assert created.escrow_address is None
    assert created.checkout_url == "/checkout/esc-1"


@pytest.mark.asyncio
async def test_error_payload_becomes_typed_error():
    def handler(request):
        return httpx.Response(
            409, json={"error": {"code": "intent_stale", "message": "Escrow esc-1 is already funded"}}
        )

    async with _client(handler) as client:
        with pytest.raises(IntentStale, match="already funded"):
            await client.get_fund_intent("esc-1")


@pytest.mark.asyncio
async def test_not_found_error():
    def handler(request):
        return httpx.Response(404, json={"error": {"code": "token_not_found", "message": "nope"}})

    async with _client(handler) as client:
        with pytest.raises(TokenNotFound):
            await client.create_escrow(
                token_addr=PYUSD, amount="1", payee=PAYEE, rule=ReleaseRule(type="deadline", days=3), chain_id=137
            )


@pytest.mark.asyncio
async def test_unstructured_server_error():
    def handler(request):
        return httpx.Response(500, text="Internal Server Error")

    async with _client(handler) as client:
        with pytest.raises(EscrowPayError, match="500"):
            await client.get_escrow("esc-1")


@pytest.mark.asyncio
async def test_release_without_tx_hash():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"escrowId": "esc-1", "released": False, "status": "released", "txHash": None, "trigger": "manual"},
        )

    async with _client(handler) as client:
        outcome = await client.release("esc-1")

    assert bodies == [{}]
    assert outcome.released is False


@pytest.mark.asyncio
async def test_list_escrows_filters_by_payee():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["payee"] = request.url.params.get("payee")
        return httpx.Response(
            200,
            json=[
                {
                    "id": "esc-1",
                    "chainId": 42161,
                    "token": {"address": PYUSD, "symbol": "PYUSD", "decimals": 6},
                    "amount": "25000000",
                    "displayAmount": "25",
                    "payee": PAYEE,
                    "status": "funded",
                }
            ],
        )

    async with _client(handler) as client:
        escrows = await client.list_escrows(PAYEE)

    assert seen == {"path": "/api/escrows", "payee": PAYEE}
    assert [(e.id, e.status.value) for e in escrows] == [("esc-1", "funded")]
