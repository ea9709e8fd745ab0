# settlement/signing_coordinator.py

import logging
import time
from typing import Callable, Optional

import httpx

from settlement import config
from settlement.errors import TransientError
from settlement.retry_policy import RetryPolicy

logger = logging.getLogger("settlement_signer")


class SigningCoordinator:
    """
    Authorizes the settlement leg through the MPC signer.

    With MPC_SIGNER_URL set, the remote signer is asked over HTTP and
    transport failures are retried here. Without it, the local mock collects
    the child-device and parent-device partial signatures and approves.
    """

    def __init__(
        self,
        signer_url: str = config.MPC_SIGNER_URL,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.Client] = None,
        mock_delay: float = config.MPC_MOCK_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.signer_url = signer_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=config.MPC_SIGN_ATTEMPTS)
        self._client = client
        self.mock_delay = mock_delay
        self._sleep = sleep

    def worst_case_seconds(self) -> float:
        if not self.signer_url:
            return 2 * self.mock_delay
        return self.retry_policy.worst_case_seconds(config.MPC_SIGNER_TIMEOUT)

    def sign(self, intent_id: str) -> bool:
        if not self.signer_url:
            return self._sign_with_mock(intent_id)
        return self.retry_policy.run(
            lambda: self._request_signature(intent_id),
            label=f"MPC signing for intent {intent_id}",
        )

    def _request_signature(self, intent_id: str) -> bool:
        client = self._client or httpx.Client(timeout=config.MPC_SIGNER_TIMEOUT)
        try:
            resp = client.post(f"{self.signer_url}/sign", json={"tx_id": str(intent_id)})
            if resp.status_code >= 500:
                raise TransientError(f"MPC signer unavailable (HTTP {resp.status_code})")
            resp.raise_for_status()
            signed = bool(resp.json().get("signed"))
        except httpx.HTTPStatusError as e:
            logger.error("MPC signer rejected intent %s: %s", intent_id, e)
            return False
        except httpx.HTTPError as e:
            raise TransientError(f"MPC signer request failed: {e}") from e
        finally:
            if self._client is None:
                client.close()

        logger.info("MPC signature for intent %s: %s", intent_id, "granted" if signed else "refused")
        return signed

    def _sign_with_mock(self, intent_id: str) -> bool:
        logger.info("Requesting partial signature from Child Device...")
        self._sleep(self.mock_delay)
        logger.info("Requesting partial signature from Parent Device...")
        self._sleep(self.mock_delay)
        logger.info("Mock MPC signature assembled for intent %s", intent_id)
        return True
