# settlement/intent_service.py

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from settlement import config
from settlement.balance_ledger import BalanceLedger
from settlement.base_utils import BaseUtils
from settlement.entities import InputMethod, PaymentIntent
from settlement.errors import InputError, IntentNotFound, SettlementError
from settlement.intent_repository import IntentRepository
from settlement.intent_solver import IntentSolver
from settlement.pricing import SUPPORTED_ASSETS

logger = logging.getLogger("settlement_backend")

_NETWORKS = {
    InputMethod.LEDGER_BALANCE.value: "solana-devnet",
    InputMethod.CHAIN_WALLET.value: "solana-devnet",
    InputMethod.FIAT_GATEWAY.value: "fiat",
}


def _to_decimal(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InputError(f"'{field}' must be a number")
    if not amount.is_finite():
        raise InputError(f"'{field}' must be a number")
    return amount


def record_payment_intent(
    session_factory: sessionmaker,
    *,
    family_id: str,
    clinic_id: str,
    fiat_amount,
    input_method: str,
    input_tx_ref: Optional[str] = None,
    currency: str = config.DEFAULT_CURRENCY,
) -> str:
    """
    Create a PaymentIntent row in state CREATED and return its intent_id.
    """
    if not family_id or not clinic_id:
        raise InputError("Missing required parameters")

    amount = _to_decimal(fiat_amount, "fiat_amount")
    if amount <= 0:
        raise InputError("Amount must be greater than 0")

    if input_method not in _NETWORKS:
        raise InputError("Invalid input method")

    if input_method == InputMethod.CHAIN_WALLET.value and input_tx_ref:
        # base58 signatures are ~88 chars; odd lengths may still be valid
        if len(input_tx_ref) < 64 or len(input_tx_ref) > 128:
            logger.warning(f"Unusual transaction signature format: {input_tx_ref[:20]}...")

    return IntentRepository(session_factory).create(
        family_id=str(family_id),
        clinic_id=str(clinic_id),
        fiat_amount=amount,
        currency=currency,
        input_method=input_method,
        network=_NETWORKS[input_method],
        input_tx_ref=input_tx_ref or None,
    )


class IntentService(BaseUtils):
    """
    Dict-in / dict-out surface for the collaborating layers (HTTP, queue).
    Failures come back as {"status": "error", "message": ...}.
    """

    def __init__(self, session_factory: sessionmaker, solver: Optional[IntentSolver] = None):
        self.SessionFactory = session_factory
        self.repository = IntentRepository(session_factory)
        self.ledger = BalanceLedger(session_factory)
        self._solver = solver

    @property
    def solver(self) -> IntentSolver:
        if self._solver is None:
            self._solver = IntentSolver.from_config(self.SessionFactory)
        return self._solver

    def submit_intent(self, payload) -> Dict[str, Any]:
        payload = payload or {}
        if not isinstance(payload, dict):
            return {"intent_id": None, "status": "error", "message": "submit_intent payload must be a JSON object"}

        try:
            intent_id = record_payment_intent(
                self.SessionFactory,
                family_id=payload.get("family_id"),
                clinic_id=payload.get("clinic_id"),
                fiat_amount=payload.get("fiat_amount"),
                input_method=payload.get("input_method"),
                input_tx_ref=payload.get("input_tx_ref"),
                currency=payload.get("currency") or config.DEFAULT_CURRENCY,
            )
        except InputError as e:
            return {"intent_id": None, "status": "error", "message": str(e)}
        except Exception as e:
            self.color_print(f"submit_intent(): DB error -> {e}", color="red")
            return {"intent_id": None, "status": "error", "message": f"Error creating intent: {e}"}

        return {
            "intent_id": intent_id,
            "status": "CREATED",
            "message": "Intent created. Trigger processing with request_type='process_intent'.",
        }

    def intent_status(self, payload) -> Dict[str, Any]:
        intent_id = (payload or {}).get("intent_id")
        if not intent_id:
            return {"intent_id": None, "status": "error", "message": "Missing 'intent_id' in intent_status payload"}

        try:
            intent: Optional[PaymentIntent] = self.repository.find(intent_id)
        except Exception as e:
            self.color_print(f"intent_status(): DB error -> {e}", color="red")
            return {"intent_id": intent_id, "status": "error", "message": str(e)}

        if intent is None:
            return {"intent_id": intent_id, "status": "not_found", "message": "Intent not found"}
        return intent.to_dict()

    def process_intent(self, payload) -> Dict[str, Any]:
        intent_id = (payload or {}).get("intent_id")
        if not intent_id:
            return {"success": False, "error": "Intent ID is required"}

        logger.info(f"[process_intent] Starting processing for intent: {intent_id}")
        try:
            intent = self.solver.process(intent_id)
        except IntentNotFound as e:
            return {"success": False, "intent_id": intent_id, "status": "not_found", "error": str(e)}
        except SettlementError as e:
            logger.info(f"[process_intent] Intent {intent_id} did not settle: {e}")
            return {"success": False, "intent_id": intent_id, "error": str(e)}
        except Exception as e:
            self.color_print(f"[process_intent] Error processing intent {intent_id}: {e}", color="red")
            return {"success": False, "intent_id": intent_id, "error": str(e) or "Unknown error occurred"}

        if not intent.is_terminal:
            # skipped: another worker holds the lease or moved the intent first
            return {"success": False, "intent_id": intent_id, "status": "already_processing"}
        return {"success": intent.status == "SETTLED", "intent_id": intent_id, "status": intent.status}

    def top_up_wallet(self, payload) -> Dict[str, Any]:
        payload = payload or {}
        user_id = payload.get("user_id")
        asset = payload.get("asset")
        if not user_id:
            return {"success": False, "error": "User ID is required"}
        if asset not in SUPPORTED_ASSETS:
            return {"success": False, "error": "Asset must be either USDC or SOL"}

        try:
            amount = _to_decimal(payload.get("amount"), "amount")
            if amount <= 0:
                return {"success": False, "error": "Amount must be greater than 0"}
            self.ledger.credit(user_id, asset, amount, create_missing=True)
        except SettlementError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            self.color_print(f"top_up_wallet(): DB error -> {e}", color="red")
            return {"success": False, "error": f"Failed to update wallet: {e}"}

        return {"success": True}
