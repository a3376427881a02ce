from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from soldrip.domain.models import Route

logger = logging.getLogger(__name__)

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
STABLE_SYMBOL = "USDC"
DEFAULT_DECIMALS = 6


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    mint: str
    decimals: int
    # Upper bound on units received per stable unit spent; None disables the buy sanity check.
    max_units_per_stable: Decimal | None = None


KNOWN_TOKENS: dict[str, TokenInfo] = {
    "SOL": TokenInfo("SOL", SOL_MINT, 9, max_units_per_stable=Decimal("0.05")),
    "USDC": TokenInfo("USDC", USDC_MINT, 6),
    "JUP": TokenInfo("JUP", "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN", 6),
    "TRUMP": TokenInfo("TRUMP", "6p6xgHyF7AeE6TZkSmFsko444wqoP15icUSqi2jfGiPN", 6),
    "WIF": TokenInfo("WIF", "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm", 6),
    "BONK": TokenInfo("BONK", "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", 5),
}

_BY_MINT: dict[str, TokenInfo] = {token.mint: token for token in KNOWN_TOKENS.values()}


def token_for_mint(mint: str) -> TokenInfo | None:
    return _BY_MINT.get(mint)


def decimals_for(mint: str) -> int:
    token = _BY_MINT.get(mint)
    return token.decimals if token is not None else DEFAULT_DECIMALS


def to_raw_amount(ui_amount: Decimal, decimals: int) -> int:
    scaled = (ui_amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def to_ui_amount(raw_amount: int, decimals: int) -> Decimal:
    return Decimal(raw_amount).scaleb(-decimals)


def format_ui(raw_amount: int, decimals: int, places: int | None = None) -> str:
    """Render a raw integer amount for display; never used for fund movement."""

    shown = places if places is not None else decimals
    value = to_ui_amount(raw_amount, decimals)
    quantum = Decimal(1).scaleb(-shown)
    return str(value.quantize(quantum, rounding=ROUND_DOWN))


def parse_routes(routes_csv: list[str], routes_json: str | None) -> tuple[Route, ...]:
    if routes_json:
        try:
            parsed = json.loads(routes_json)
        except json.JSONDecodeError:
            logger.warning("routes_json_invalid_falling_back_to_pairs")
        else:
            if isinstance(parsed, list) and parsed:
                return tuple(_route_from_json(item) for item in parsed)
            logger.warning("routes_json_not_a_list_falling_back_to_pairs")

    routes: list[Route] = []
    for pair in routes_csv:
        route = _route_from_pair(pair)
        if route is not None:
            routes.append(route)
    return tuple(routes)


def _route_from_json(item: object) -> Route:
    if not isinstance(item, dict):
        raise ValueError("DRIP_ROUTES_JSON entries must be objects")
    token_mint = item.get("tokenMint")
    if not isinstance(token_mint, str) or not token_mint.strip():
        raise ValueError("DRIP_ROUTES_JSON entries require tokenMint")
    stable_mint = item.get("usdcMint") or USDC_MINT
    if token_mint == stable_mint:
        raise ValueError("DRIP_ROUTES_JSON tokenMint must differ from the stable mint")
    return Route(
        name=str(item.get("name") or "Unknown-Pair"),
        volatile_mint=token_mint.strip(),
        stable_mint=str(stable_mint),
    )


def _route_from_pair(pair: str) -> Route | None:
    parts = [part.strip().upper() for part in pair.split("-")]
    if len(parts) != 2 or not all(parts):
        logger.warning("route_pair_invalid", extra={"extra": {"pair": pair}})
        return None

    first, second = parts
    if first == STABLE_SYMBOL and second != STABLE_SYMBOL:
        symbol = second
    elif second == STABLE_SYMBOL and first != STABLE_SYMBOL:
        symbol = first
    else:
        logger.warning("route_pair_without_stable", extra={"extra": {"pair": pair}})
        return None

    token = KNOWN_TOKENS.get(symbol)
    if token is None:
        logger.warning(
            "route_symbol_unknown",
            extra={"extra": {"pair": pair, "symbol": symbol, "hint": "use DRIP_ROUTES_JSON"}},
        )
        return None
    return Route(name=pair.strip().upper(), volatile_mint=token.mint, stable_mint=USDC_MINT)
