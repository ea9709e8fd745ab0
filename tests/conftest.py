import os
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MPC_MOCK_DELAY", "0")

from settlement.balance_ledger import BalanceLedger
from settlement.chain_verifier import VerificationResult
from settlement.entities import Base, Profile, Wallet
from settlement.errors import TransientError
from settlement.intent_repository import IntentRepository
from settlement.intent_solver import IntentSolver
from settlement.privacy_transfer import PrivacyTransferExecutor
from settlement.retry_policy import LINEAR, RetryPolicy

FAMILY_ID = "fam-0001"
CLINIC_ID = "clinic-0001"
PARENT_ID = "parent-0001"
PARENT_ADDRESS = "ParentWa11et1111111111111111111111111111111"


def no_sleep(_seconds):
    return None


class StubVerifier:
    def __init__(self, *results):
        self.results = list(results) or [VerificationResult.verified(0)]
        self.calls = []

    def verify(self, tx_ref, expected_fiat_amount):
        self.calls.append((tx_ref, expected_fiat_amount))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class StubSigner:
    def __init__(self, signed=True):
        self.signed = signed
        self.calls = []

    def worst_case_seconds(self):
        return 0

    def sign(self, intent_id):
        self.calls.append(intent_id)
        if isinstance(self.signed, BaseException):
            raise self.signed
        return self.signed


class StubRelay:
    def __init__(self, deposit_failures=0, proof_failures=0, transfer_failures=0):
        self.deposit_failures = deposit_failures
        self.proof_failures = proof_failures
        self.transfer_failures = transfer_failures
        self.calls = []

    def deposit(self, wallet, amount, token_mint):
        self.calls.append(("deposit", wallet, amount))
        if self.deposit_failures:
            self.deposit_failures -= 1
            raise TransientError("relay unavailable")
        return {"success": True, "pool_address": "pool-1"}

    def generate_proof(self, amount, token):
        self.calls.append(("proof", amount, token))
        if self.proof_failures:
            self.proof_failures -= 1
            raise TransientError("prover busy")
        return {"commitment": f"c-{amount}", "proof_bytes": "ab" * 32}

    def transfer(self, sender, recipient, amount, token, transfer_type, proof):
        self.calls.append(("transfer", sender, recipient, amount))
        if self.transfer_failures:
            self.transfer_failures -= 1
            raise TransientError("relay timeout")
        return {"success": True, "tx_signature": "sig-settled-1", "proof_pda": "proof-pda-1"}

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return IntentRepository(session_factory)


@pytest.fixture
def ledger(session_factory):
    return BalanceLedger(session_factory)


@pytest.fixture
def family(session_factory):
    session = session_factory()
    try:
        session.add(Profile(id=PARENT_ID, family_id=FAMILY_ID, role="parent", wallet_address=PARENT_ADDRESS))
        session.add(Wallet(user_id=PARENT_ID, usdc_balance=Decimal("100"), sol_balance=Decimal("2")))
        session.commit()
    finally:
        session.close()
    return FAMILY_ID


@pytest.fixture
def verifier():
    return StubVerifier()


@pytest.fixture
def signer():
    return StubSigner()


@pytest.fixture
def relay():
    return StubRelay()


@pytest.fixture
def solver(repository, ledger, verifier, signer, relay):
    privacy = PrivacyTransferExecutor(relay, retry_policy=RetryPolicy(sleep=no_sleep))
    return IntentSolver(
        repository,
        ledger,
        verifier,
        signer,
        privacy,
        chain_retry=RetryPolicy(max_attempts=5, base_delay=2.0, backoff=LINEAR, sleep=no_sleep),
        worker_id="test-worker",
    )


@pytest.fixture
def make_intent(repository):
    def _make(fiat_amount="200000", input_method="LEDGER_BALANCE", **fields):
        return repository.create(
            family_id=FAMILY_ID,
            clinic_id=CLINIC_ID,
            fiat_amount=Decimal(fiat_amount),
            currency="IDR",
            input_method=input_method,
            **fields,
        )
    return _make
