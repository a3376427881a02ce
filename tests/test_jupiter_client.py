from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from soldrip.adapters.jupiter import JupiterClient
from soldrip.domain.tokens import SOL_MINT, USDC_MINT
from soldrip.services.drip_errors import ProviderError

API_KEY = "jup_test_key_1234567890"


def _quote_payload(**overrides) -> dict:
    payload = {
        "inputMint": USDC_MINT,
        "outputMint": SOL_MINT,
        "inAmount": "1500000",
        "outAmount": "7500000",
        "otherAmountThreshold": "7462500",
        "slippageBps": 50,
        "priceImpactPct": "0.0012",
        "routePlan": [{"swapInfo": {"label": "Orca"}}, {"swapInfo": {"label": "Raydium"}}],
    }
    payload.update(overrides)
    return payload


def _client(handler) -> JupiterClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://jup.test/swap/v1")
    return JupiterClient(api_key=API_KEY, client=http)


def test_quote_sends_integer_amount_and_api_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_quote_payload())

    quote = asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))

    request = seen[0]
    assert request.url.path == "/swap/v1/quote"
    assert request.url.params["amount"] == "1500000"
    assert request.url.params["slippageBps"] == "50"
    assert request.headers["x-api-key"] == API_KEY
    assert quote.in_amount == 1_500_000
    assert quote.out_amount == 7_500_000
    assert quote.price_impact_pct == Decimal("0.0012")
    assert quote.route_labels == ["Orca", "Raydium"]
    assert quote.raw["otherAmountThreshold"] == "7462500"


def test_quote_rejects_mismatched_amount() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_quote_payload(inAmount="1"))

    with pytest.raises(ProviderError, match="inAmount"):
        asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))


def test_quote_rejects_malformed_amounts() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_quote_payload(outAmount="12.5"))

    with pytest.raises(ProviderError, match="malformed"):
        asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))


def test_http_error_is_provider_error_without_secret() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text=f"rate limited for key {API_KEY}")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))

    assert exc_info.value.status_code == 429
    assert API_KEY not in (exc_info.value.response_snippet or "")


def test_error_payload_is_provider_error() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "Could not find any route"})

    with pytest.raises(ProviderError, match="Could not find any route"):
        asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))


def test_transport_error_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError, match="ConnectError"):
        asyncio.run(_client(handler).quote(USDC_MINT, SOL_MINT, 1_500_000, 50))


def test_swap_transaction_echoes_quote_response() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=_quote_payload())
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"swapTransaction": "AQID", "lastValidBlockHeight": 1})

    async def run() -> str:
        client = _client(handler)
        quote = await client.quote(USDC_MINT, SOL_MINT, 1_500_000, 50)
        return await client.swap_transaction(quote, "WalletPubkey111")

    assert asyncio.run(run()) == "AQID"
    body = bodies[0]
    assert body["userPublicKey"] == "WalletPubkey111"
    assert body["quoteResponse"] == _quote_payload()
    assert body["wrapAndUnwrapSol"] is True


def test_swap_without_transaction_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=_quote_payload())
        return httpx.Response(200, json={})

    async def run() -> str:
        client = _client(handler)
        quote = await client.quote(USDC_MINT, SOL_MINT, 1_500_000, 50)
        return await client.swap_transaction(quote, "WalletPubkey111")

    with pytest.raises(ProviderError, match="swapTransaction"):
        asyncio.run(run())
