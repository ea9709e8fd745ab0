# settlement/config.py

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


# ---- fixed conversion rates ----
IDR_TO_USD_RATE = _env_decimal("IDR_TO_USD_RATE", "16000")      # 1 USD = 16,000 IDR
USDC_PRICE_USD  = _env_decimal("USDC_PRICE_USD", "1")
SOL_PRICE_USD   = _env_decimal("SOL_PRICE_USD", "100")
SOL_TO_IDR_RATE = _env_decimal("SOL_TO_IDR_RATE", "1600000")    # 1 SOL = 1,600,000 IDR
LAMPORTS_PER_SOL = 1_000_000_000

# ---- settlement asset (USD1, SPL token) ----
USD1_DECIMALS        = _env_int("USD1_DECIMALS", "6")
USD1_MINT_ADDRESS    = os.getenv("USD1_MINT_ADDRESS", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
MIN_PRIVACY_AMOUNT   = _env_int("MIN_PRIVACY_AMOUNT", "1000000")  # smallest units

# ---- chain ----
SOLANA_RPC_ENDPOINT   = os.getenv("SOLANA_RPC_ENDPOINT", "https://api.devnet.solana.com")
VAULT_PUBLIC_KEY      = os.getenv("VAULT_PUBLIC_KEY", "44444444444444444444444444444444444444444444")
CHAIN_COMMITMENT      = os.getenv("CHAIN_COMMITMENT", "confirmed")
CHAIN_LOOKUP_TIMEOUT  = _env_float("CHAIN_LOOKUP_TIMEOUT", "10")
AMOUNT_TOLERANCE      = _env_decimal("AMOUNT_TOLERANCE", "0.01")

CHAIN_VERIFY_ATTEMPTS   = _env_int("CHAIN_VERIFY_ATTEMPTS", "5")
CHAIN_VERIFY_BASE_DELAY = _env_float("CHAIN_VERIFY_BASE_DELAY", "2.0")

# ---- privacy relay ----
PRIVACY_RELAY_URL         = os.getenv("PRIVACY_RELAY_URL", "")
PRIVACY_RELAY_TIMEOUT     = _env_float("PRIVACY_RELAY_TIMEOUT", "45")
PRIVACY_RECIPIENT_ADDRESS = os.getenv("PRIVACY_RECIPIENT_ADDRESS", "")   # empty -> shield to self
PRIVACY_RETRY_BASE_DELAY  = _env_float("PRIVACY_RETRY_BASE_DELAY", "2.0")
DEPOSIT_ATTEMPTS          = _env_int("DEPOSIT_ATTEMPTS", "3")
PROOF_ATTEMPTS            = _env_int("PROOF_ATTEMPTS", "2")
TRANSFER_ATTEMPTS         = _env_int("TRANSFER_ATTEMPTS", "3")

# ---- MPC signer ----
MPC_SIGNER_URL      = os.getenv("MPC_SIGNER_URL", "")   # empty -> local two-device mock
MPC_SIGNER_TIMEOUT  = _env_float("MPC_SIGNER_TIMEOUT", "30")
MPC_SIGN_ATTEMPTS   = _env_int("MPC_SIGN_ATTEMPTS", "3")
MPC_MOCK_DELAY      = _env_float("MPC_MOCK_DELAY", "1.0")

# ---- solver ----
INTENT_LEASE_SECONDS = _env_int("INTENT_LEASE_SECONDS", "600")
# added on top of the slowest step when the lease is sized from retry settings
LEASE_MARGIN_SECONDS = _env_int("LEASE_MARGIN_SECONDS", "60")
REFUND_ON_FAILURE    = os.getenv("REFUND_ON_FAILURE", "true").lower() in ("1", "true", "yes")
DEFAULT_CURRENCY     = os.getenv("CURRENCY", "IDR")
