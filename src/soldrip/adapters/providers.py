from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from soldrip.domain.models import parse_raw_amount


class SwapQuote(BaseModel):
    """Validated quote returned by the swap aggregator.

    Amounts are integer smallest-unit values; the aggregator encodes them as decimal strings.
    ``raw`` keeps the untouched response because the swap-building call must echo it back.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )

    input_mint: str = Field(min_length=1)
    output_mint: str = Field(min_length=1)
    in_amount: int = Field(gt=0)
    out_amount: int = Field(gt=0)
    slippage_bps: int = Field(ge=0)
    price_impact_pct: Decimal | None = None
    route_info: list[dict[str, Any]] = Field(default_factory=list, alias="routePlan")
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("in_amount", "out_amount", mode="before")
    @classmethod
    def parse_amount(cls, value: object) -> int | None:
        return parse_raw_amount(value)

    @property
    def route_labels(self) -> list[str]:
        labels: list[str] = []
        for hop in self.route_info:
            swap_info = hop.get("swapInfo")
            if isinstance(swap_info, dict) and swap_info.get("label"):
                labels.append(str(swap_info["label"]))
        return labels


class SwapProvider(ABC):
    @abstractmethod
    async def quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> SwapQuote:
        raise NotImplementedError

    @abstractmethod
    async def build_swap(self, quote: SwapQuote, wallet_public_key: str) -> str:
        """Return the base64 serialized, unsigned swap transaction."""
        raise NotImplementedError

    @abstractmethod
    async def submit(self, serialized_transaction: str) -> str:
        raise NotImplementedError

    @abstractmethod
    async def confirm(self, tx_ref: str, timeout_ms: int) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class BalanceProvider(ABC):
    @abstractmethod
    async def balance_of(self, owner: str, mint: str) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None
