"""
Allocation State Tests
Async read/write of the allocation record and the web3 ledger client

Run: python -m pytest tests/test_allocation_state.py -v
"""

from unittest.mock import MagicMock

import pytest
from web3 import Web3
from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted

from conftest import wait_for_pending_write
from yield_pilot.infrastructure.errors import (
    StateNotFound,
    StateReadError,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
)
from yield_pilot.infrastructure.ledger import UNAUTHORIZED_SELECTOR, AuthorityCredential, Web3LedgerClient
from yield_pilot.models import ZERO_ADDRESS, AllocationRecord, StateHandle, SwitchDecision
from yield_pilot.services.allocation_state import AllocationStateStore


def switch_to(protocol_id: int, apy_bps: int) -> SwitchDecision:
    return SwitchDecision(True, protocol_id, apy_bps, 0.7)


# =============================================================================
# TEST: AllocationStateStore
# =============================================================================

class TestReadState:

    @pytest.mark.asyncio
    async def test_returns_record(self, state_store, credential):
        record = await state_store.read_state()

        assert record == AllocationRecord(credential.address, 0, 420)
        assert record.current_apy_percent == 4.2

    @pytest.mark.asyncio
    async def test_missing_record(self, fake_ledger):
        store = AllocationStateStore(fake_ledger, StateHandle("0x" + "00" * 20, "0x" + "cd" * 32))

        with pytest.raises(StateNotFound):
            await store.read_state()

    @pytest.mark.asyncio
    async def test_slow_read_times_out(self, fake_ledger, handle):
        fake_ledger.read_delay = 0.3
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05)

        with pytest.raises(StateReadError):
            await store.read_state()

    @pytest.mark.asyncio
    async def test_caller_timeout_cannot_exceed_call_timeout(self, fake_ledger, handle):
        fake_ledger.read_delay = 0.3
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05)

        with pytest.raises(StateReadError):
            await store.read_state(timeout=10)


class TestWriteState:

    @pytest.mark.asyncio
    async def test_sets_protocol_and_apy_together(self, state_store, fake_ledger, handle, credential):
        receipt = await state_store.write_state(switch_to(1, 490), credential)

        assert receipt.status == 1
        assert fake_ledger.transitions == [(1, 490)]
        assert fake_ledger.records[handle.state_id] == AllocationRecord(credential.address, 1, 490)

    @pytest.mark.asyncio
    async def test_foreign_credential_rejected_before_submitting(self, state_store, fake_ledger, other_credential):
        current = await state_store.read_state()

        with pytest.raises(Unauthorized):
            await state_store.write_state(switch_to(1, 490), other_credential, current=current)
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_ledger_authority_check_still_applies(self, state_store, other_credential):
        with pytest.raises(Unauthorized):
            await state_store.write_state(switch_to(1, 490), other_credential)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("protocol_id, apy_bps", [(256, 490), (-1, 490), (1, 65536), (1, -5)])
    async def test_values_must_fit_record(self, state_store, fake_ledger, credential, protocol_id, apy_bps):
        with pytest.raises(WriteRejected):
            await state_store.write_state(switch_to(protocol_id, apy_bps), credential)
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_ledger_rejection_propagates(self, state_store, fake_ledger, credential):
        fake_ledger.fail_with = WriteRejected("nonce too low")

        with pytest.raises(WriteRejected):
            await state_store.write_state(switch_to(1, 490), credential)

    @pytest.mark.asyncio
    async def test_slow_finality_times_out(self, fake_ledger, handle, credential):
        fake_ledger.transition_delay = 0.3
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05, finality_timeout=0.05)

        with pytest.raises(WriteTimeout):
            await store.write_state(switch_to(1, 490), credential)
        await wait_for_pending_write(store)

    @pytest.mark.asyncio
    async def test_one_write_in_flight_at_a_time(self, fake_ledger, handle, credential):
        fake_ledger.transition_delay = 0.3
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05, finality_timeout=0.05)

        with pytest.raises(WriteTimeout):
            await store.write_state(switch_to(1, 490), credential)
        assert store.write_in_flight

        with pytest.raises(WriteRejected):
            await store.write_state(switch_to(2, 510), credential)
        assert fake_ledger.transitions == [(1, 490)]

        await wait_for_pending_write(store)
        assert not store.write_in_flight
        fake_ledger.transition_delay = 0.0
        await store.write_state(switch_to(2, 510), credential)
        assert fake_ledger.transitions == [(1, 490), (2, 510)]


# =============================================================================
# TEST: Web3LedgerClient
# =============================================================================

PROGRAM = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
SENDER = Web3.to_checksum_address("0x19e7e376e7c213b7e7e7e46cc70a5dd086daff2a")


@pytest.fixture
def w3():
    w3 = MagicMock()
    w3.eth.gas_price = 1000
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
    return w3


@pytest.fixture
def contract(w3):
    return w3.eth.contract.return_value


@pytest.fixture
def ledger(w3):
    return Web3LedgerClient(w3, PROGRAM, chain_id=84532, finality_timeout=5)


@pytest.fixture
def mock_credential():
    account = MagicMock()
    account.address = SENDER
    account.sign_transaction.return_value = MagicMock(hash=b"\x01" * 32, raw_transaction=b"raw")
    return AuthorityCredential(account)


HANDLE = StateHandle(PROGRAM, "0x" + "ab" * 32)


class TestWeb3LedgerClient:

    def test_read_decodes_record(self, ledger, contract):
        contract.functions.getState.return_value.call.return_value = (SENDER, 1, 490)

        assert ledger.read(HANDLE) == AllocationRecord(SENDER, 1, 490)

    def test_zero_authority_means_uninitialized(self, ledger, contract):
        contract.functions.getState.return_value.call.return_value = (ZERO_ADDRESS, 0, 0)

        assert ledger.read(HANDLE) is None

    def test_read_failure(self, ledger, contract):
        contract.functions.getState.return_value.call.side_effect = ConnectionError("rpc down")

        with pytest.raises(StateReadError):
            ledger.read(HANDLE)

    def test_transition_sends_one_update(self, ledger, contract, w3, mock_credential):
        receipt = ledger.transition(HANDLE, 1, 490, mock_credential)

        contract.functions.updateYield.assert_called_once()
        assert contract.functions.updateYield.call_args.args[1:] == (1, 490)
        tx = contract.functions.updateYield.return_value.build_transaction.call_args.args[0]
        assert tx["nonce"] == 7
        assert tx["chainId"] == 84532
        assert tx["gasPrice"] == 1200
        w3.eth.send_raw_transaction.assert_called_once_with(b"raw")
        assert receipt.tx_hash == "0x" + "01" * 32
        assert receipt.block_number == 42

    def test_unauthorized_revert(self, ledger, contract, w3, mock_credential):
        contract.functions.updateYield.return_value.call.side_effect = ContractLogicError("execution reverted: Unauthorized")

        with pytest.raises(Unauthorized):
            ledger.transition(HANDLE, 1, 490, mock_credential)
        w3.eth.send_raw_transaction.assert_not_called()

    def test_unauthorized_custom_error(self, ledger, contract, w3, mock_credential):
        contract.functions.updateYield.return_value.call.side_effect = ContractCustomError(
            UNAUTHORIZED_SELECTOR, data=UNAUTHORIZED_SELECTOR
        )

        with pytest.raises(Unauthorized):
            ledger.transition(HANDLE, 1, 490, mock_credential)
        w3.eth.send_raw_transaction.assert_not_called()

    def test_other_revert_is_rejected(self, ledger, contract, w3, mock_credential):
        contract.functions.updateYield.return_value.call.side_effect = ContractLogicError("execution reverted")

        with pytest.raises(WriteRejected):
            ledger.transition(HANDLE, 1, 490, mock_credential)
        w3.eth.send_raw_transaction.assert_not_called()

    def test_failed_receipt_is_rejected(self, ledger, w3, mock_credential):
        w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 42}

        with pytest.raises(WriteRejected) as exc:
            ledger.transition(HANDLE, 1, 490, mock_credential)
        assert exc.value.tx_hash == "0x" + "01" * 32

    def test_missing_receipt_times_out(self, ledger, w3, mock_credential):
        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted()

        with pytest.raises(WriteTimeout) as exc:
            ledger.transition(HANDLE, 1, 490, mock_credential)
        assert exc.value.tx_hash == "0x" + "01" * 32
