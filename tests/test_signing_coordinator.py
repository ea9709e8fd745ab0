import json

import httpx
import pytest

from conftest import no_sleep
from settlement.errors import MaxRetryErrorsException
from settlement.retry_policy import RetryPolicy
from settlement.signing_coordinator import SigningCoordinator


def remote(handler, attempts=3):
    return SigningCoordinator(
        "https://signer.test/",
        retry_policy=RetryPolicy(max_attempts=attempts, sleep=no_sleep),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_mock_signer_collects_both_partials():
    naps = []

    assert SigningCoordinator("", mock_delay=1.5, sleep=naps.append).sign("intent-1")
    assert naps == [1.5, 1.5]


def test_remote_signer_grants():
    def handler(request):
        assert request.url.path == "/sign"
        assert json.loads(request.content) == {"tx_id": "intent-1"}
        return httpx.Response(200, json={"signed": True})

    assert remote(handler).sign("intent-1") is True


def test_remote_signer_refuses():
    assert remote(lambda request: httpx.Response(200, json={"signed": False})).sign("intent-1") is False


def test_rejected_request_is_a_refusal_not_a_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403)

    assert remote(handler).sign("intent-1") is False
    assert len(calls) == 1


def test_server_errors_are_retried():
    responses = [httpx.Response(502), httpx.Response(200, json={"signed": True})]

    assert remote(lambda request: responses.pop(0)).sign("intent-1") is True
    assert responses == []


def test_unreachable_signer_exhausts_attempts():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(MaxRetryErrorsException, match="MPC signing for intent intent-1 failed after 2 attempts"):
        remote(handler, attempts=2).sign("intent-1")


def test_worst_case_follows_the_mode():
    assert SigningCoordinator("", mock_delay=1.5).worst_case_seconds() == 3.0
    assert remote(lambda request: httpx.Response(200), attempts=3).worst_case_seconds() == 3 * 30 + 2 + 4
