from decimal import Decimal

import pytest

from settlement.entities import PaymentIntent
from settlement.errors import InputError
from settlement.pricing import (
    SOL,
    USDC,
    fiat_to_asset,
    fiat_to_lamports,
    fiat_to_settlement_units,
    fiat_to_usd,
    settlement_units_to_display,
)
from settlement.settlement_router import SettlementRouter


def test_fiat_conversions():
    assert fiat_to_usd("200000") == Decimal("12.5")
    assert fiat_to_asset("200000", USDC) == Decimal("12.5")
    assert fiat_to_asset("1600000", SOL) == Decimal("1")
    assert fiat_to_lamports(1_600_000) == 1_000_000_000
    assert fiat_to_settlement_units("200000") == 12_500_000
    assert settlement_units_to_display(12_500_000) == Decimal("12.5")


def test_conversions_round_down():
    assert fiat_to_lamports("0.01") == 6
    assert fiat_to_settlement_units("0.01") == 0


def test_unknown_asset():
    with pytest.raises(ValueError):
        fiat_to_asset("1", "BTC")


@pytest.mark.parametrize(
    "method, rail",
    [("LEDGER_BALANCE", "usdc-ledger"), ("CHAIN_WALLET", "sol-vault"), ("FIAT_GATEWAY", "fiat-gateway")],
)
def test_rail_follows_input_method(method, rail):
    assert SettlementRouter().select_rail(PaymentIntent(input_method=method)) == rail


def test_unknown_input_method_has_no_rail():
    with pytest.raises(InputError):
        SettlementRouter().select_rail(PaymentIntent(input_method="CARD"))
