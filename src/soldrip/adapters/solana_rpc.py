from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from soldrip.adapters.jupiter import JupiterClient
from soldrip.adapters.providers import BalanceProvider, SwapProvider, SwapQuote
from soldrip.domain.tokens import SOL_MINT
from soldrip.security.redaction import sanitize_text
from soldrip.services.drip_errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Native SOL kept back for transaction fees when SOL itself is the traded asset.
NATIVE_FEE_RESERVE_LAMPORTS = 10_000_000
CONFIRM_POLL_INTERVAL_SECONDS = 2.0
_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class SolanaRpcGateway(BalanceProvider):
    def __init__(
        self,
        *,
        rpc_url: str,
        keypair: Keypair | None = None,
        client: AsyncClient | None = None,
        poll_interval_seconds: float = CONFIRM_POLL_INTERVAL_SECONDS,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.keypair = keypair
        self._client = client or AsyncClient(rpc_url, commitment=Confirmed)
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep_fn

    async def close(self) -> None:
        await self._client.close()

    async def _rpc(self, method: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(
                f"rpc {method} failed: {type(exc).__name__}: {sanitize_text(str(exc))[:200]}"
            ) from exc

    async def submit(self, serialized_transaction: str) -> str:
        if self.keypair is None:
            raise ProviderError("cannot submit a transaction without a wallet keypair")
        try:
            unsigned = VersionedTransaction.from_bytes(base64.b64decode(serialized_transaction))
        except ValueError as exc:
            raise ProviderError("swap transaction could not be decoded") from exc
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        response = await self._rpc(
            "sendTransaction",
            self._client.send_raw_transaction(
                bytes(signed), opts=TxOpts(skip_preflight=True, max_retries=2)
            ),
        )
        signature = str(response.value)
        logger.info("transaction_submitted", extra={"extra": {"tx_ref": signature}})
        return signature

    async def confirm(self, tx_ref: str, timeout_ms: int) -> bool:
        signature = Signature.from_string(tx_ref)
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            response = await self._rpc(
                "getSignatureStatuses", self._client.get_signature_statuses([signature])
            )
            status = response.value[0] if response.value else None
            if status is not None:
                if status.err is not None:
                    logger.warning(
                        "transaction_failed_on_chain",
                        extra={"extra": {"tx_ref": tx_ref, "error": str(status.err)}},
                    )
                    return False
                if status.confirmation_status in _LANDED:
                    return True
            if time.monotonic() >= deadline:
                logger.warning(
                    "transaction_confirm_timeout",
                    extra={"extra": {"tx_ref": tx_ref, "timeout_ms": timeout_ms}},
                )
                return False
            await self._sleep(self.poll_interval_seconds)

    async def balance_of(self, owner: str, mint: str) -> int:
        owner_key = Pubkey.from_string(owner)
        if mint == SOL_MINT:
            response = await self._rpc(
                "getBalance", self._client.get_balance(owner_key, commitment=Confirmed)
            )
            return max(0, int(response.value) - NATIVE_FEE_RESERVE_LAMPORTS)

        accounts = await self._rpc(
            "getTokenAccountsByOwner",
            self._client.get_token_accounts_by_owner(
                owner_key, TokenAccountOpts(mint=Pubkey.from_string(mint)), commitment=Confirmed
            ),
        )
        total = 0
        for account in accounts.value:
            balance = await self._rpc(
                "getTokenAccountBalance",
                self._client.get_token_account_balance(account.pubkey, commitment=Confirmed),
            )
            total += int(balance.value.amount)
        return total


class JupiterSwapProvider(SwapProvider):
    """Jupiter quotes and swap building, signed and landed through the RPC gateway."""

    def __init__(self, *, jupiter: JupiterClient, gateway: SolanaRpcGateway) -> None:
        self.jupiter = jupiter
        self.gateway = gateway

    async def quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> SwapQuote:
        return await self.jupiter.quote(input_mint, output_mint, amount, slippage_bps)

    async def build_swap(self, quote: SwapQuote, wallet_public_key: str) -> str:
        return await self.jupiter.swap_transaction(quote, wallet_public_key)

    async def submit(self, serialized_transaction: str) -> str:
        return await self.gateway.submit(serialized_transaction)

    async def confirm(self, tx_ref: str, timeout_ms: int) -> bool:
        return await self.gateway.confirm(tx_ref, timeout_ms)

    async def close(self) -> None:
        await self.jupiter.close()
