from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from soldrip.adapters.providers import SwapQuote
from soldrip.security.redaction import sanitize_text
from soldrip.services.drip_errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.jup.ag/swap/v1"


class JupiterClient:
    """Quote and swap-building calls against the Jupiter swap API.

    No retries happen here; a failed call surfaces as :class:`ProviderError` and the leg retry
    policy decides what to do next.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=httpx.Timeout(timeout_seconds)
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            response = await self._client.request(
                method, path, params=params, json=json_body, headers=headers
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise ProviderError(
                f"jupiter {method} {path} failed: {type(exc).__name__}", request_path=path
            ) from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"jupiter {method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                request_path=path,
                response_snippet=sanitize_text(response.text[:300], known_secrets=[self.api_key or ""]),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"jupiter {path} returned invalid JSON", request_path=path) from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"jupiter {path} payload must be an object", request_path=path)
        if payload.get("error"):
            raise ProviderError(
                f"jupiter {path} error: {sanitize_text(str(payload['error']))}",
                status_code=response.status_code,
                request_path=path,
            )
        return payload

    async def quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> SwapQuote:
        if amount <= 0:
            raise ValueError("quote amount must be positive")
        payload = await self._request(
            "GET",
            "/quote",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": str(slippage_bps),
            },
        )
        try:
            quote = SwapQuote.model_validate({**payload, "raw": payload})
        except ValidationError as exc:
            raise ProviderError(f"malformed quote response: {exc.error_count()} errors") from exc

        if quote.input_mint != input_mint or quote.output_mint != output_mint:
            raise ProviderError(
                f"quote mints {quote.input_mint}->{quote.output_mint} do not match request "
                f"{input_mint}->{output_mint}"
            )
        if quote.in_amount != amount:
            raise ProviderError(f"quote inAmount {quote.in_amount} does not match request {amount}")
        logger.debug(
            "quote_received",
            extra={
                "extra": {
                    "in_amount": quote.in_amount,
                    "out_amount": quote.out_amount,
                    "slippage_bps": quote.slippage_bps,
                    "route": quote.route_labels,
                }
            },
        )
        return quote

    async def swap_transaction(self, quote: SwapQuote, user_public_key: str) -> str:
        payload = await self._request(
            "POST",
            "/swap",
            json_body={
                "quoteResponse": quote.raw,
                "userPublicKey": user_public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
            },
        )
        transaction = payload.get("swapTransaction")
        if not isinstance(transaction, str) or not transaction:
            raise ProviderError("swap response is missing swapTransaction", request_path="/swap")
        return transaction
