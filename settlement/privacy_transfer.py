# settlement/privacy_transfer.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from settlement import config
from settlement.errors import BusinessRuleError, RelayRejected, TransientError, WalletNotFound
from settlement.pricing import settlement_units_to_display
from settlement.retry_policy import RetryPolicy

logger = logging.getLogger("settlement_privacy")

SETTLEMENT_TOKEN = "USD1"


@dataclass
class ProofData:
    commitment: str
    proof_bytes: str
    raw: Dict[str, Any]


@dataclass
class TransferResult:
    settlement_ref: str
    proof_handle: str


class PrivacyRelay(Protocol):
    def deposit(self, wallet: str, amount: int, token_mint: str) -> Dict[str, Any]: ...

    def generate_proof(self, amount: int, token: str) -> Dict[str, Any]: ...

    def transfer(
        self,
        sender: str,
        recipient: str,
        amount: int,
        token: str,
        transfer_type: str,
        proof: Dict[str, Any],
    ) -> Dict[str, Any]: ...


class HttpPrivacyRelay:
    """HTTP client for the shielded-pool relay."""

    def __init__(
        self,
        base_url: str = config.PRIVACY_RELAY_URL,
        *,
        timeout: float = config.PRIVACY_RELAY_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url and client is None:
            raise RuntimeError("PRIVACY_RELAY_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._client.post(f"{self.base_url}{path}", json=body)
        except httpx.HTTPError as e:
            raise TransientError(f"Privacy relay unreachable: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"Privacy relay unavailable (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise RelayRejected(f"Privacy relay rejected {path} (HTTP {resp.status_code}): {resp.text}")
        return resp.json()

    def deposit(self, wallet: str, amount: int, token_mint: str) -> Dict[str, Any]:
        return self._post("/pool/deposit", {"wallet": wallet, "amount": amount, "token_mint": token_mint})

    def generate_proof(self, amount: int, token: str) -> Dict[str, Any]:
        return self._post("/proofs", {"amount": amount, "token": token})

    def transfer(self, sender, recipient, amount, token, transfer_type, proof) -> Dict[str, Any]:
        return self._post(
            "/transfers",
            {
                "sender": sender,
                "recipient": recipient,
                "amount": amount,
                "token": token,
                "type": transfer_type,
                "custom_proof": proof,
            },
        )


class PrivacyTransferExecutor:
    """
    Three ordered phases, each retried on its own:
      1. deposit into the shielded pool under the family wallet
      2. proof generation sized to the amount
      3. shielded transfer carrying that proof
    Without a configured recipient the transfer goes back to the sender
    (a shield); with one it forwards to that address.
    """

    def __init__(
        self,
        relay: PrivacyRelay,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        min_amount: int = config.MIN_PRIVACY_AMOUNT,
        recipient_address: str = config.PRIVACY_RECIPIENT_ADDRESS,
        token_mint: str = config.USD1_MINT_ADDRESS,
        deposit_attempts: int = config.DEPOSIT_ATTEMPTS,
        proof_attempts: int = config.PROOF_ATTEMPTS,
        transfer_attempts: int = config.TRANSFER_ATTEMPTS,
    ):
        self.relay = relay
        self.retry_policy = retry_policy or RetryPolicy(base_delay=config.PRIVACY_RETRY_BASE_DELAY)
        self.min_amount = min_amount
        self.recipient_address = recipient_address
        self.token_mint = token_mint
        self.deposit_attempts = deposit_attempts
        self.proof_attempts = proof_attempts
        self.transfer_attempts = transfer_attempts

    def worst_case_seconds(self, call_timeout: float = config.PRIVACY_RELAY_TIMEOUT) -> float:
        return sum(
            self.retry_policy.with_attempts(attempts).worst_case_seconds(call_timeout)
            for attempts in (self.deposit_attempts, self.proof_attempts, self.transfer_attempts)
        )

    def transfer(self, wallet_address: str, amount: int) -> TransferResult:
        if not wallet_address:
            raise WalletNotFound("Parent wallet address not found")
        if amount < self.min_amount:
            raise BusinessRuleError(
                f"Amount below minimum privacy threshold: "
                f"{settlement_units_to_display(self.min_amount)} {SETTLEMENT_TOKEN}"
            )

        logger.info("Starting privacy transfer for %d %s units", amount, SETTLEMENT_TOKEN)

        # Phase 1
        deposit = self.retry_policy.with_attempts(self.deposit_attempts).run(
            lambda: self.relay.deposit(wallet_address, amount, self.token_mint),
            label="Shielded pool deposit",
        )
        if not deposit.get("success"):
            raise RelayRejected(deposit.get("error") or "Deposit failed")
        logger.info("Deposit completed: %s", deposit.get("pool_address"))

        # Phase 2
        proof = self.retry_policy.with_attempts(self.proof_attempts).run(
            lambda: self._generate_proof(amount),
            label="Proof generation",
        )
        logger.info("Proof generated: %d bytes", len(proof.proof_bytes))

        # Phase 3
        recipient = self.recipient_address or wallet_address
        response = self.retry_policy.with_attempts(self.transfer_attempts).run(
            lambda: self.relay.transfer(
                wallet_address,
                recipient,
                amount,
                SETTLEMENT_TOKEN,
                "internal",
                proof.raw,
            ),
            label="Shielded transfer",
        )
        if not response.get("success"):
            raise RelayRejected(response.get("error") or "Private transfer failed")

        settlement_ref = response.get("tx_signature") or ""
        proof_handle = response.get("proof_pda") or ""
        if not settlement_ref:
            raise RelayRejected("Private transfer returned no transaction signature")

        logger.info("Private transfer completed: %s (proof %s)", settlement_ref, proof_handle)
        return TransferResult(settlement_ref=settlement_ref, proof_handle=proof_handle)

    def _generate_proof(self, amount: int) -> ProofData:
        raw = self.relay.generate_proof(amount, SETTLEMENT_TOKEN)
        proof_bytes = raw.get("proof_bytes") or ""
        commitment = raw.get("commitment") or ""
        if not proof_bytes or not commitment:
            raise TransientError("Proof generation returned an incomplete commitment/proof pair")
        return ProofData(commitment=commitment, proof_bytes=proof_bytes, raw=raw)
