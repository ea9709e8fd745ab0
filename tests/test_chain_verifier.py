import json

import httpx
import pytest

from settlement.chain_verifier import SYSTEM_PROGRAM_ID, ChainVerifier, VerificationOutcome

VAULT = "Vau1t11111111111111111111111111111111111111"
PAYER = "Payer1111111111111111111111111111111111111"
ONE_SOL_IN_IDR = 1_600_000


def parsed_transfer(lamports, destination=VAULT, err=None):
    return {
        "meta": {"err": err, "preBalances": [0, 0], "postBalances": [0, 0]},
        "transaction": {
            "message": {
                "accountKeys": [{"pubkey": PAYER}, {"pubkey": destination}],
                "instructions": [
                    {
                        "program": "system",
                        "programId": SYSTEM_PROGRAM_ID,
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": PAYER, "destination": destination, "lamports": lamports},
                        },
                    }
                ],
            }
        },
    }


def rpc_verifier(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ChainVerifier("https://rpc.test", VAULT, client=client)


def result_handler(result):
    def handler(request):
        body = json.loads(request.content)
        assert body["method"] == "getTransaction"
        assert body["params"][1]["encoding"] == "jsonParsed"
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})
    return handler


@pytest.mark.parametrize(
    "lamports, outcome",
    [
        (1_000_000_000, VerificationOutcome.VERIFIED),
        (1_009_000_000, VerificationOutcome.VERIFIED),    # 100.9%
        (1_010_000_000, VerificationOutcome.MISMATCH),    # exactly 101%
        (991_000_000, VerificationOutcome.VERIFIED),      # 99.1%
        (990_000_000, VerificationOutcome.MISMATCH),      # exactly 99%
    ],
)
def test_tolerance_band_is_strict_one_percent(lamports, outcome):
    verifier = rpc_verifier(result_handler(parsed_transfer(lamports)))

    assert verifier.verify("sig", ONE_SOL_IN_IDR).outcome == outcome


def test_transfer_to_another_account_is_a_mismatch():
    verifier = rpc_verifier(result_handler(parsed_transfer(1_000_000_000, destination=PAYER)))

    result = verifier.verify("sig", ONE_SOL_IN_IDR)

    assert result.outcome == VerificationOutcome.MISMATCH
    assert "does not contain transfer to vault" in result.detail


def test_failed_transaction_is_a_mismatch():
    verifier = rpc_verifier(result_handler(parsed_transfer(1_000_000_000, err={"InstructionError": [0, "Custom"]})))

    assert verifier.verify("sig", ONE_SOL_IN_IDR).outcome == VerificationOutcome.MISMATCH


def test_unseen_transaction_is_retryable():
    verifier = rpc_verifier(result_handler(None))

    result = verifier.verify("sig", ONE_SOL_IN_IDR)

    assert result.outcome == VerificationOutcome.RETRYABLE
    assert "may still be confirming" in result.detail


def test_rpc_error_is_retryable():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}})

    result = rpc_verifier(handler).verify("sig", ONE_SOL_IN_IDR)

    assert result.outcome == VerificationOutcome.RETRYABLE
    assert "Node is behind" in result.detail


def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = rpc_verifier(handler).verify("sig", ONE_SOL_IN_IDR)

    assert result.outcome == VerificationOutcome.RETRYABLE
    assert result.detail.startswith("Transaction fetch timeout")


def test_http_503_is_retryable():
    result = rpc_verifier(lambda request: httpx.Response(503)).verify("sig", ONE_SOL_IN_IDR)

    assert result.outcome == VerificationOutcome.RETRYABLE


def test_raw_system_instruction_uses_balance_delta():
    transaction = {
        "meta": {"err": None, "preBalances": [5_000_000_000, 10], "postBalances": [3_999_995_000, 1_000_000_010]},
        "transaction": {
            "message": {
                "accountKeys": [PAYER, VAULT],
                "instructions": [{"programId": SYSTEM_PROGRAM_ID, "accounts": [0, 1], "data": "3Bxs4h24hBtQy9rw"}],
            }
        },
    }

    result = ChainVerifier("https://rpc.test", VAULT, client=httpx.Client()).check_transfer(
        "sig", transaction, 1_000_000_000
    )

    assert result.outcome == VerificationOutcome.VERIFIED
    assert result.transferred == 1_000_000_000
