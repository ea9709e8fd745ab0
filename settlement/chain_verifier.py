# settlement/chain_verifier.py

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from settlement import config
from settlement.pricing import fiat_to_lamports, within_tolerance

logger = logging.getLogger("settlement_chain")

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


class VerificationOutcome(str, Enum):
    VERIFIED = "VERIFIED"
    MISMATCH = "MISMATCH"
    RETRYABLE = "RETRYABLE"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    detail: str = ""
    transferred: Optional[int] = None

    @classmethod
    def verified(cls, transferred: int, detail: str = "") -> "VerificationResult":
        return cls(VerificationOutcome.VERIFIED, detail, transferred)

    @classmethod
    def mismatch(cls, detail: str, transferred: Optional[int] = None) -> "VerificationResult":
        return cls(VerificationOutcome.MISMATCH, detail, transferred)

    @classmethod
    def retryable(cls, detail: str) -> "VerificationResult":
        return cls(VerificationOutcome.RETRYABLE, detail)


class ChainVerifier:
    """
    Confirms that a Solana transaction moved the expected lamports to the vault.

    verify() never raises for chain conditions: a transaction that is not yet
    visible, a transport error or an RPC error is RETRYABLE; a transaction
    that exists but pays the wrong account / amount (or failed on-chain) is
    a MISMATCH. Retrying is the caller's business.
    """

    def __init__(
        self,
        rpc_endpoint: str = config.SOLANA_RPC_ENDPOINT,
        vault_address: str = config.VAULT_PUBLIC_KEY,
        *,
        commitment: str = config.CHAIN_COMMITMENT,
        timeout: float = config.CHAIN_LOOKUP_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self.rpc_endpoint = rpc_endpoint
        self.vault_address = vault_address
        self.commitment = commitment
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    # -------- RPC --------
    def _get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        body = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getTransaction",
            "params": [
                tx_ref,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }
        resp = self._client.post(self.rpc_endpoint, json=body)
        resp.raise_for_status()
        data = resp.json()
        if data.get("error"):
            err = data["error"]
            raise RuntimeError(f"RPC error {err.get('code')}: {err.get('message')}")
        return data.get("result")

    # -------- public --------
    def verify(self, tx_ref: str, expected_fiat_amount) -> VerificationResult:
        try:
            transaction = self._get_transaction(tx_ref)
        except httpx.TimeoutException as e:
            return VerificationResult.retryable(f"Transaction fetch timeout: {e}")
        except (httpx.HTTPError, RuntimeError, ValueError) as e:
            return VerificationResult.retryable(str(e) or e.__class__.__name__)

        if not transaction:
            return VerificationResult.retryable(
                f"Transaction {tx_ref} not found on-chain (may still be confirming)"
            )

        expected = fiat_to_lamports(expected_fiat_amount)
        return self.check_transfer(tx_ref, transaction, expected)

    def check_transfer(self, tx_ref: str, transaction: Dict[str, Any], expected: int) -> VerificationResult:
        meta = transaction.get("meta") or {}
        if meta.get("err") is not None:
            return VerificationResult.mismatch(f"Transaction {tx_ref} failed on-chain: {meta['err']}")

        message = (transaction.get("transaction") or {}).get("message") or {}
        account_keys = [self._pubkey(k) for k in message.get("accountKeys") or []]

        transferred = self._find_vault_transfer(message.get("instructions") or [], account_keys, meta)
        if transferred is None:
            return VerificationResult.mismatch(
                f"Transaction {tx_ref} does not contain transfer to vault address"
            )

        if within_tolerance(transferred, expected):
            logger.info("Transaction %s verified: %d lamports transferred to vault (expected: %d)",
                        tx_ref, transferred, expected)
            return VerificationResult.verified(transferred)

        logger.error("Transaction %s amount mismatch: expected %d, got %d", tx_ref, expected, transferred)
        return VerificationResult.mismatch(
            f"Transaction {tx_ref} amount mismatch: expected {expected} lamports, got {transferred}",
            transferred,
        )

    def _pubkey(self, key) -> str:
        if isinstance(key, dict):
            return str(key.get("pubkey", ""))
        return str(key)

    def _find_vault_transfer(self, instructions, account_keys, meta) -> Optional[int]:
        for instruction in instructions:
            parsed = instruction.get("parsed")
            if isinstance(parsed, dict) and parsed.get("type") == "transfer":
                info = parsed.get("info") or {}
                if info.get("destination") == self.vault_address:
                    return int(info.get("lamports", 0))
                continue

            # raw System Program instruction: read the destination's balance delta
            if instruction.get("programId") != SYSTEM_PROGRAM_ID:
                continue
            accounts = instruction.get("accounts") or []
            if len(accounts) < 2:
                continue
            dest = accounts[-1]
            dest_index = dest if isinstance(dest, int) else (
                account_keys.index(dest) if dest in account_keys else None
            )
            if dest_index is None or dest_index >= len(account_keys):
                continue
            if account_keys[dest_index] != self.vault_address:
                continue

            pre = meta.get("preBalances") or []
            post = meta.get("postBalances") or []
            if len(pre) > dest_index and len(post) > dest_index:
                return int(post[dest_index]) - int(pre[dest_index])
        return None
