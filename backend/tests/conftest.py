"""
Pytest Configuration for Yield Pilot Tests

Run all tests: python -m pytest tests/ -v
Run unit tests only: python -m pytest tests/ -v -m "not integration"
"""

import asyncio
import secrets
import sys
import time
from pathlib import Path

import httpx
import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")

from yield_pilot.api.server import JITO_PROTOCOL, create_app
from yield_pilot.data_sources import JitoApySource
from yield_pilot.infrastructure.config import PaymentConfig, PolicyConfig, YieldPilotConfig
from yield_pilot.infrastructure.errors import PaymentInvalid, SettlementFailed, Unauthorized
from yield_pilot.infrastructure.ledger import AuthorityCredential, LedgerClient
from yield_pilot.models import AllocationRecord, StateHandle, TransactionReceipt
from yield_pilot.payments.facilitator import Facilitator, SettlementReceipt
from yield_pilot.payments.gate import PaymentGate, ProtectedResource
from yield_pilot.payments.signer import EthAccountPaymentSigner
from yield_pilot.services.allocation_state import AllocationStateStore

AGENT_KEY = "0x" + "11" * 32
PAYER_KEY = "0x" + "22" * 32
OTHER_KEY = "0x" + "33" * 32

PROGRAM_ADDRESS = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
STATE_ID = "0x" + "ab" * 32
RECEIVER = "0x" + "9a" * 20
ASSET = "0x036cbd53842c5426634e7929541ec2318f3dcf7e"


# =============================================================================
# FAKES
# =============================================================================

class FakeLedger(LedgerClient):
    """
    In-memory ledger program. Blocking like the real client, so delays use
    time.sleep and run inside the executor.
    """

    def __init__(self):
        self.records = {}
        self.reads = 0
        self.transitions = []
        self.fail_with = None
        self.apply_writes = True
        self.drift_bps = 0
        self.read_delay = 0.0
        self.transition_delay = 0.0

    def seed(self, handle: StateHandle, record: AllocationRecord):
        self.records[handle.state_id] = record

    def initialize(self, credential):
        state_id = "0x" + secrets.token_hex(32)
        self.records[state_id] = AllocationRecord(credential.address, 0, 0)
        return StateHandle(PROGRAM_ADDRESS, state_id)

    def read(self, handle):
        self.reads += 1
        if self.read_delay:
            time.sleep(self.read_delay)
        return self.records.get(handle.state_id)

    def transition(self, handle, protocol_id, apy_bps, credential):
        self.transitions.append((protocol_id, apy_bps))
        if self.fail_with is not None:
            raise self.fail_with
        record = self.records[handle.state_id]
        if record.authority != credential.address:
            raise Unauthorized(record.authority, credential.address)
        if self.apply_writes:
            self.records[handle.state_id] = AllocationRecord(record.authority, protocol_id, apy_bps + self.drift_bps)
        if self.transition_delay:
            time.sleep(self.transition_delay)
        return TransactionReceipt("0x" + "ef" * 32, block_number=len(self.transitions))


class FakeFacilitator(Facilitator):
    def __init__(self):
        self.verified = []
        self.settled = []
        self.reject_reason = None
        self.settle_error = None
        self.settle_delay = 0.0

    async def verify(self, proof, requirement):
        self.verified.append(proof.proof_id)
        if self.reject_reason:
            raise PaymentInvalid(self.reject_reason)

    async def settle(self, proof, requirement):
        self.settled.append(proof.proof_id)
        if self.settle_delay:
            await asyncio.sleep(self.settle_delay)
        if self.settle_error:
            raise SettlementFailed(self.settle_error)
        return SettlementReceipt("0x" + "cd" * 32, proof.authorization.from_address, proof.network)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# FIXTURES - Shared across all test files
# =============================================================================

@pytest.fixture
def credential():
    return AuthorityCredential.from_private_key(AGENT_KEY)


@pytest.fixture
def other_credential():
    return AuthorityCredential.from_private_key(OTHER_KEY)


@pytest.fixture
def handle():
    return StateHandle(PROGRAM_ADDRESS, STATE_ID)


@pytest.fixture
def fake_ledger(handle, credential):
    """Ledger seeded with protocol 0 at 4.20%"""
    ledger = FakeLedger()
    ledger.seed(handle, AllocationRecord(credential.address, 0, 420))
    return ledger


@pytest.fixture
def state_store(fake_ledger, handle):
    return AllocationStateStore(fake_ledger, handle, call_timeout=1.0, finality_timeout=1.0)


@pytest.fixture
def policy():
    return PolicyConfig()


@pytest.fixture
def fake_facilitator():
    return FakeFacilitator()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payer_signer(clock):
    return EthAccountPaymentSigner(PAYER_KEY, "base-sepolia", clock=clock)


@pytest.fixture
def other_signer(clock):
    return EthAccountPaymentSigner(OTHER_KEY, "base-sepolia", clock=clock)


@pytest.fixture
def payment_config():
    return PaymentConfig(
        network="base-sepolia",
        receiver=RECEIVER,
        asset=ASSET,
        price_amount="10000",
        max_timeout_seconds=300,
        facilitator_url="https://facilitator.test",
    )


@pytest.fixture
def jito_upstream():
    """Jito source answering 7.20% from a mock transport"""
    def handler(request):
        return httpx.Response(200, json={"apy": [{"data": 0.07}, {"data": 0.072}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JitoApySource(JITO_PROTOCOL, http_client=client)


@pytest.fixture
def payment_gate(payment_config, fake_facilitator, clock):
    return PaymentGate(
        payment_config,
        fake_facilitator,
        [ProtectedResource("/apy/jito", description="Latest Jito stake pool APY")],
        clock=clock,
    )


@pytest.fixture
def paid_app(payment_config, fake_facilitator, jito_upstream, payment_gate):
    config = YieldPilotConfig(payments=payment_config)
    return create_app(config, fake_facilitator, jito_source=jito_upstream, gate=payment_gate)


def asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def wait_for_pending_write(store: AllocationStateStore, limit: float = 2.0):
    """Let a timed-out transition finish in its executor thread"""
    waited = 0.0
    while store.write_in_flight and waited < limit:
        await asyncio.sleep(0.01)
        waited += 0.01


# =============================================================================
# MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (use real APIs)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
