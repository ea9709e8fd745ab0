# settlement/errors.py


class SettlementError(Exception):
    """
    Base class for every failure the settlement pipeline knows how to classify.

    `retryable` tells the retry policy whether another attempt can help.
    Anything that is not a SettlementError is treated as unexpected: it still
    lands on the solver's top-level handler and marks the intent FAILED.
    """
    retryable = False


class IntentNotFound(SettlementError):
    def __init__(self, intent_id: str):
        super().__init__(f"Intent {intent_id} not found")
        self.intent_id = intent_id


class InputError(SettlementError):
    """Missing funding reference, unsupported input method, bad payload."""


class VerificationMismatch(SettlementError):
    """The on-chain transaction exists but does not pay what was expected."""


class BusinessRuleError(SettlementError):
    """Insufficient balance, below minimum transfer amount, missing wallet."""


class InsufficientFunds(BusinessRuleError):
    pass


class WalletNotFound(BusinessRuleError):
    pass


class TransientError(SettlementError):
    """RPC timeout, network error, relay unavailable."""
    retryable = True


class SigningError(SettlementError):
    pass


class MaxRetryErrorsException(SettlementError):
    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error


class RelayRejected(SettlementError):
    """The privacy relay answered but refused the operation."""
