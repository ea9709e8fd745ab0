# settlement/intent_solver.py
"""
Payment-intent settlement state machine.

    CREATED -> FUNDING_DETECTED -> ROUTING -> SHIELDING -> SETTLED
       \\-> FAILED        \\-> FAILED   \\-> FAILED  \\-> FAILED

process(intent_id) drives an intent forward one persisted step at a time
until it is terminal. It is safe to call again at any point: a terminal
intent is a no-op, anything else resumes from its persisted status.

Concurrency
-----------
A per-intent lease (conditional UPDATE on lease_owner / lease_expires_at) is
taken before the first step and renewed before every later one, so a
duplicate trigger while a call is in flight returns without touching the
intent. The lease is never shorter than the slowest step with every
external call timing out (longest_step_seconds) plus LEASE_MARGIN_SECONDS.
Each status write is a compare-and-swap on the status the step started
from and on the lease owner; losing it means some other worker already
moved or took the intent and the loop stops quietly.

The ledger deduction and the CREATED -> FUNDING_DETECTED write share one
transaction, so a crash between them cannot charge twice on resume.

Failure
-------
Any exception ends on one path: the intent is marked FAILED with the
exception's message and the exception is re-raised to the caller. When the
intent had already been paid from the custodial ledger, that debit is
credited back in the same transaction (REFUND_ON_FAILURE). If the credit
itself fails, FAILED is still written, without the refund.
"""

import logging
import math
import os
import socket
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from settlement import config
from settlement.balance_ledger import BalanceLedger
from settlement.chain_verifier import ChainVerifier, VerificationOutcome
from settlement.entities import InputMethod, IntentStatus, PaymentIntent
from settlement.errors import (
    InputError,
    SigningError,
    TransientError,
    VerificationMismatch,
    WalletNotFound,
)
from settlement.intent_repository import IntentRepository
from settlement.pricing import USDC, fiat_to_asset, fiat_to_settlement_units
from settlement.privacy_transfer import HttpPrivacyRelay, PrivacyTransferExecutor
from settlement.retry_policy import LINEAR, RetryPolicy
from settlement.settlement_router import SettlementRouter
from settlement.signing_coordinator import SigningCoordinator

logger = logging.getLogger("settlement_solver")

LEDGER_PRECISION = Decimal("0.000001")

# custodial asset that pays for each off-chain input method
_LEDGER_ASSETS = {
    InputMethod.LEDGER_BALANCE.value: USDC,
}


class IntentSolver:
    def __init__(
        self,
        repository: IntentRepository,
        ledger: BalanceLedger,
        verifier: ChainVerifier,
        signer: SigningCoordinator,
        privacy: PrivacyTransferExecutor,
        *,
        router: Optional[SettlementRouter] = None,
        chain_retry: Optional[RetryPolicy] = None,
        lease_seconds: int = config.INTENT_LEASE_SECONDS,
        refund_on_failure: bool = config.REFUND_ON_FAILURE,
        worker_id: Optional[str] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.verifier = verifier
        self.signer = signer
        self.privacy = privacy
        self.router = router or SettlementRouter()
        self.chain_retry = chain_retry or RetryPolicy(
            max_attempts=config.CHAIN_VERIFY_ATTEMPTS,
            base_delay=config.CHAIN_VERIFY_BASE_DELAY,
            backoff=LINEAR,
        )
        # a lease shorter than the slowest step could lapse while it runs
        self.lease_seconds = max(
            lease_seconds,
            math.ceil(self.longest_step_seconds()) + config.LEASE_MARGIN_SECONDS,
        )
        self.refund_on_failure = refund_on_failure
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

        self._handlers: Dict[str, Callable[[PaymentIntent, str], bool]] = {
            IntentStatus.CREATED.value: self._handle_created,
            IntentStatus.FUNDING_DETECTED.value: self._handle_funding_detected,
            IntentStatus.ROUTING.value: self._handle_routing,
            IntentStatus.SHIELDING.value: self._handle_shielding,
        }

    @classmethod
    def from_config(cls, session_factory: sessionmaker) -> "IntentSolver":
        return cls(
            repository=IntentRepository(session_factory),
            ledger=BalanceLedger(session_factory),
            verifier=ChainVerifier(),
            signer=SigningCoordinator(),
            privacy=PrivacyTransferExecutor(HttpPrivacyRelay()),
        )

    def longest_step_seconds(self) -> float:
        """Upper bound on one handler's run time with every external call timing out."""
        return max(
            self.chain_retry.worst_case_seconds(config.CHAIN_LOOKUP_TIMEOUT),
            self.signer.worst_case_seconds(),
            self.privacy.worst_case_seconds(),
        )

    # -----------------------
    # Entry point
    # -----------------------

    def process(self, intent_id: str) -> PaymentIntent:
        intent = self.repository.get(intent_id)   # missing record: nothing to mark
        logger.info("Intent %s fetched. Status: %s, Method: %s, Amount: %s",
                    intent_id, intent.status, intent.input_method, intent.fiat_amount)

        if intent.is_terminal:
            logger.info("Intent %s is already %s", intent_id, intent.status)
            return intent

        owner = f"{self.worker_id}:{uuid4().hex[:8]}"
        if not self.repository.claim(intent_id, owner, self.lease_seconds):
            current = self.repository.get(intent_id)
            logger.info("Intent %s not claimed (status %s); another worker holds it or it finished",
                        intent_id, current.status)
            return current

        try:
            return self._run(intent_id, owner)
        except Exception as e:
            logger.exception("FATAL ERROR processing intent %s", intent_id)
            self._fail(intent_id, e, owner)
            raise
        finally:
            self.repository.release(intent_id, owner)

    def _run(self, intent_id: str, owner: str) -> PaymentIntent:
        while True:
            intent = self.repository.get(intent_id)
            if intent.is_terminal:
                logger.info("Intent %s reached %s", intent_id, intent.status)
                return intent

            # renew before every step so the lease covers the whole step
            if not self.repository.claim(intent_id, owner, self.lease_seconds):
                logger.warning("Intent %s: lease lost before %s, stopping", intent_id, intent.status)
                return self.repository.get(intent_id)

            handler = self._handlers.get(intent.status)
            if handler is None:
                raise InputError(f"Unknown status: {intent.status}")

            if not handler(intent, owner):
                return self.repository.get(intent_id)

    def _fail(self, intent_id: str, error: Exception, owner: str) -> None:
        reason = str(error) or error.__class__.__name__
        try:
            current = self.repository.find(intent_id)
            if current is None or current.is_terminal:
                return

            wallet = None
            if self.refund_on_failure and current.ledger_debit is not None and current.refunded_at is None:
                wallet = self.ledger.find_family_wallet(current.family_id)
                if wallet is None:
                    logger.error("Intent %s: debit of %s %s cannot be refunded, wallet is gone",
                                 intent_id, current.ledger_debit, current.ledger_asset)

            marked = False
            if wallet is not None:
                try:
                    with self.repository.transaction() as session:
                        marked = self.repository.mark_failed(
                            intent_id, reason, refunded=True, owner=owner, session=session
                        )
                        if marked:
                            self.ledger.credit(wallet.user_id, current.ledger_asset, current.ledger_debit,
                                               session=session)
                    if marked:
                        logger.info("Intent %s: refunded %s %s",
                                    intent_id, current.ledger_debit, current.ledger_asset)
                except Exception as refund_error:
                    logger.error("Intent %s: refund of %s %s failed: %s",
                                 intent_id, current.ledger_debit, current.ledger_asset, refund_error)
                    marked = self.repository.mark_failed(intent_id, reason, owner=owner)
            else:
                marked = self.repository.mark_failed(intent_id, reason, owner=owner)

            if marked:
                logger.info("Intent %s marked as FAILED: %s", intent_id, reason)
            else:
                logger.warning("Intent %s: FAILED not written, intent is terminal or leased elsewhere", intent_id)
        except Exception as update_error:
            # the original error is still re-raised by process()
            logger.error("Failed to update intent %s status to FAILED: %s", intent_id, update_error)

    # -----------------------
    # CREATED -> FUNDING_DETECTED
    # -----------------------

    def _handle_created(self, intent: PaymentIntent, owner: str) -> bool:
        if intent.input_method == InputMethod.CHAIN_WALLET.value:
            self._verify_chain_funding(intent)
            # value already moved on-chain: nothing to deduct
            return self.repository.advance(
                intent.intent_id,
                IntentStatus.CREATED.value,
                IntentStatus.FUNDING_DETECTED.value,
                owner=owner,
            )
        return self._fund_from_ledger(intent, owner)

    def _verify_chain_funding(self, intent: PaymentIntent) -> None:
        tx_ref = intent.input_tx_ref
        if not tx_ref:
            raise InputError("Missing transaction reference")

        def attempt():
            result = self.verifier.verify(tx_ref, intent.fiat_amount)
            if result.outcome == VerificationOutcome.VERIFIED:
                return result
            if result.outcome == VerificationOutcome.MISMATCH:
                raise VerificationMismatch(f"On-chain verification failed: {result.detail}")
            raise TransientError(result.detail)

        self.chain_retry.run(attempt, label="Transaction verification")
        logger.info("Intent %s: on-chain verification successful", intent.intent_id)

    def _fund_from_ledger(self, intent: PaymentIntent, owner: str) -> bool:
        asset = _LEDGER_ASSETS.get(intent.input_method)
        if asset is None:
            raise InputError(f"Unsupported input method: {intent.input_method}")

        cost = fiat_to_asset(intent.fiat_amount, asset).quantize(LEDGER_PRECISION, rounding=ROUND_HALF_UP)

        wallet = self.ledger.find_family_wallet(intent.family_id)
        if wallet is None:
            raise WalletNotFound("Parent wallet not found")

        with self.repository.transaction() as session:
            moved = self.repository.advance(
                intent.intent_id,
                IntentStatus.CREATED.value,
                IntentStatus.FUNDING_DETECTED.value,
                owner=owner,
                session=session,
                ledger_asset=asset,
                ledger_debit=cost,
            )
            if not moved:
                return False
            # InsufficientFunds rolls the status write back with it
            self.ledger.deduct(wallet.user_id, asset, cost, session=session)
        return True

    # -----------------------
    # FUNDING_DETECTED -> ROUTING -> SHIELDING
    # -----------------------

    def _handle_funding_detected(self, intent: PaymentIntent, owner: str) -> bool:
        rail = self.router.select_rail(intent)
        return self.repository.advance(
            intent.intent_id,
            IntentStatus.FUNDING_DETECTED.value,
            IntentStatus.ROUTING.value,
            owner=owner,
            settlement_rail=rail,
        )

    def _handle_routing(self, intent: PaymentIntent, owner: str) -> bool:
        if not self.signer.sign(intent.intent_id):
            raise SigningError("MPC signing failed")
        return self.repository.advance(
            intent.intent_id,
            IntentStatus.ROUTING.value,
            IntentStatus.SHIELDING.value,
            owner=owner,
        )

    # -----------------------
    # SHIELDING -> SETTLED
    # -----------------------

    def _handle_shielding(self, intent: PaymentIntent, owner: str) -> bool:
        wallet_address = self.ledger.get_wallet_address(intent.family_id)
        amount = fiat_to_settlement_units(intent.fiat_amount)

        result = self.privacy.transfer(wallet_address, amount)

        return self.repository.advance(
            intent.intent_id,
            IntentStatus.SHIELDING.value,
            IntentStatus.SETTLED.value,
            owner=owner,
            settlement_tx_ref=result.settlement_ref,
            proof_handle=result.proof_handle,
        )
