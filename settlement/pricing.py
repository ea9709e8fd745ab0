# settlement/pricing.py

from decimal import Decimal, ROUND_FLOOR

from settlement import config

USDC = "USDC"
SOL = "SOL"
SUPPORTED_ASSETS = (USDC, SOL)

_ASSET_PRICE_USD = {
    USDC: config.USDC_PRICE_USD,
    SOL: config.SOL_PRICE_USD,
}


def fiat_to_usd(fiat_amount) -> Decimal:
    return Decimal(fiat_amount) / config.IDR_TO_USD_RATE


def fiat_to_asset(fiat_amount, asset: str) -> Decimal:
    """Cost of a fiat (IDR) amount expressed in a custodial ledger asset."""
    price = _ASSET_PRICE_USD.get(asset)
    if price is None:
        raise ValueError(f"Unknown asset: {asset}")
    return fiat_to_usd(fiat_amount) / price


def fiat_to_lamports(fiat_amount) -> int:
    sol = Decimal(fiat_amount) / config.SOL_TO_IDR_RATE
    return int((sol * config.LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_FLOOR))


def fiat_to_settlement_units(fiat_amount) -> int:
    """USD1 smallest units for the shielded leg."""
    scaled = fiat_to_usd(fiat_amount) * (Decimal(10) ** config.USD1_DECIMALS)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def settlement_units_to_display(units: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** config.USD1_DECIMALS)


def within_tolerance(actual, expected, tolerance: Decimal | None = None) -> bool:
    # strict band: a deviation of exactly `tolerance` is already a mismatch
    tolerance = config.AMOUNT_TOLERANCE if tolerance is None else tolerance
    actual = Decimal(actual)
    expected = Decimal(expected)
    return abs(actual - expected) < expected * tolerance
