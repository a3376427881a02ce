from __future__ import annotations

import json
from decimal import Decimal

import pytest

from soldrip.domain.tokens import (
    KNOWN_TOKENS,
    SOL_MINT,
    USDC_MINT,
    decimals_for,
    format_ui,
    parse_routes,
    to_raw_amount,
    to_ui_amount,
)


def test_decimals_for_known_and_unknown_mints() -> None:
    assert decimals_for(SOL_MINT) == 9
    assert decimals_for(USDC_MINT) == 6
    assert decimals_for(KNOWN_TOKENS["BONK"].mint) == 5
    assert decimals_for("UnknownMint1111") == 6


def test_raw_and_ui_conversions_are_exact() -> None:
    assert to_raw_amount(Decimal("1.5"), 6) == 1_500_000
    assert to_raw_amount(Decimal("0.0000005"), 6) == 1
    assert to_ui_amount(1_500_000, 6) == Decimal("1.5")
    assert to_ui_amount(123_456_789_012_345_678, 9) == Decimal("123456789.012345678")


def test_format_ui_truncates_for_display() -> None:
    assert format_ui(1_999_999, 6, 2) == "1.99"
    assert format_ui(5_000_000, 9) == "0.005000000"


def test_parse_routes_from_pairs_skips_unknown_and_invalid() -> None:
    routes = parse_routes(["SOL-USDC", "USDC-JUP", "DOGE-USDC", "SOL-JUP", "garbage"], None)

    assert [route.name for route in routes] == ["SOL-USDC", "USDC-JUP"]
    assert routes[0].volatile_mint == SOL_MINT
    assert routes[1].volatile_mint == KNOWN_TOKENS["JUP"].mint
    assert all(route.stable_mint == USDC_MINT for route in routes)


def test_parse_routes_json_takes_precedence() -> None:
    routes_json = json.dumps([{"name": "XYZ-USDC", "tokenMint": "XyzMint111"}])

    routes = parse_routes(["SOL-USDC"], routes_json)

    assert len(routes) == 1
    assert routes[0].name == "XYZ-USDC"
    assert routes[0].volatile_mint == "XyzMint111"
    assert routes[0].stable_mint == USDC_MINT


def test_parse_routes_invalid_json_falls_back_to_pairs() -> None:
    routes = parse_routes(["SOL-USDC"], "{not json")

    assert [route.name for route in routes] == ["SOL-USDC"]


def test_parse_routes_json_entry_without_mint_is_rejected() -> None:
    with pytest.raises(ValueError, match="tokenMint"):
        parse_routes([], json.dumps([{"name": "X"}]))

    with pytest.raises(ValueError, match="differ"):
        parse_routes([], json.dumps([{"tokenMint": USDC_MINT}]))
