# settlement/settlement_router.py

import logging

from settlement.entities import InputMethod, PaymentIntent
from settlement.errors import InputError

logger = logging.getLogger("settlement_router")

_RAILS = {
    InputMethod.LEDGER_BALANCE.value: "usdc-ledger",
    InputMethod.CHAIN_WALLET.value: "sol-vault",
    InputMethod.FIAT_GATEWAY.value: "fiat-gateway",
}


class SettlementRouter:
    """
    Swap / rail selection seam. Today it only picks the settlement rail for
    the funding source; a DEX swap belongs here once there is one.
    """

    def select_rail(self, intent: PaymentIntent) -> str:
        rail = _RAILS.get(intent.input_method)
        if rail is None:
            raise InputError(f"No settlement rail for input method: {intent.input_method}")
        logger.info("Intent %s routed over %s (%s %s)",
                    intent.intent_id, rail, intent.fiat_amount, intent.currency)
        return rail
