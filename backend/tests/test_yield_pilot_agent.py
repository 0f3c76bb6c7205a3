"""
Yield Pilot Agent Tests
Full reconciliation cycles against an in-memory ledger

Run: python -m pytest tests/test_yield_pilot_agent.py -v
"""

import asyncio

import pytest

from conftest import wait_for_pending_write
from yield_pilot.agents.yield_pilot_agent import (
    RECOMMEND_REREAD,
    CycleOutcome,
    CycleStage,
    YieldPilotAgent,
)
from yield_pilot.data_sources import RateSource
from yield_pilot.infrastructure.config import PolicyConfig
from yield_pilot.infrastructure.errors import (
    PolicyError,
    ReconciliationError,
    SourceUnavailable,
    StateNotFound,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
)
from yield_pilot.models import AllocationRecord, RateObservation, StateHandle, TrackedProtocol
from yield_pilot.services.allocation_state import AllocationStateStore


class QuoteSource(RateSource):
    def __init__(self, protocol_id: int, apy: float, error: Exception = None, delay: float = 0.0):
        super().__init__(TrackedProtocol(id=protocol_id, name=f"P{protocol_id}", source="fixed", apy_percent=apy))
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_current_apy(self) -> RateObservation:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self._observation(self.protocol.apy_percent)


def sources(*apys):
    return [QuoteSource(i, apy) for i, apy in enumerate(apys)]


@pytest.fixture
def make_agent(state_store, credential):
    def factory(quote_sources, store=None, agent_credential=None, policy=None):
        return YieldPilotAgent(store or state_store, quote_sources, agent_credential or credential, policy)
    return factory


# =============================================================================
# TEST: Happy paths
# =============================================================================

class TestCycle:

    @pytest.mark.asyncio
    async def test_no_switch_leaves_state_untouched(self, make_agent, fake_ledger):
        report = await make_agent(sources(4.2, 4.6, 4.5)).run_cycle()

        assert report.outcome == CycleOutcome.NO_SWITCH
        assert report.stage == CycleStage.NOOP
        assert report.ok
        assert fake_ledger.transitions == []
        assert [o.apy_percent for o in report.observations] == [4.2, 4.6, 4.5]

    @pytest.mark.asyncio
    async def test_switch_is_written_and_verified(self, make_agent, fake_ledger, handle, credential):
        report = await make_agent(sources(4.2, 4.9, 4.6)).run_cycle()

        assert report.outcome == CycleOutcome.SWITCHED
        assert report.stage == CycleStage.VERIFYING
        assert report.state_before == AllocationRecord(credential.address, 0, 420)
        assert report.state_after == AllocationRecord(credential.address, 1, 490)
        assert report.receipt is not None
        assert fake_ledger.transitions == [(1, 490)]
        report.raise_for_failure()

    @pytest.mark.asyncio
    async def test_policy_settings_are_applied(self, make_agent, fake_ledger):
        report = await make_agent(sources(4.2, 4.9), policy=PolicyConfig(threshold_percent=1.0)).run_cycle()

        assert report.outcome == CycleOutcome.NO_SWITCH
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_report_serializes(self, make_agent):
        report = await make_agent(sources(4.2, 4.9)).run_cycle()

        data = report.to_dict()
        assert data["outcome"] == "switched"
        assert data["decision"]["target_apy_bps"] == 490
        assert data["finished_at"] is not None

    @pytest.mark.asyncio
    async def test_cycles_do_not_interleave(self, make_agent, fake_ledger):
        agent = make_agent(sources(4.2, 4.9))

        first, second = await asyncio.gather(agent.run_cycle(), agent.run_cycle())

        assert first.outcome == CycleOutcome.SWITCHED
        assert second.outcome == CycleOutcome.NO_SWITCH
        assert fake_ledger.transitions == [(1, 490)]


# =============================================================================
# TEST: Failures before writing
# =============================================================================

class TestEarlyFailures:

    @pytest.mark.asyncio
    async def test_missing_state_fails_at_reading(self, make_agent, fake_ledger, credential):
        store = AllocationStateStore(fake_ledger, StateHandle("0x" + "00" * 20, "0x" + "cd" * 32))
        quote_sources = sources(4.2, 4.9)

        report = await make_agent(quote_sources, store=store).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.READING
        assert isinstance(report.error, StateNotFound)
        assert all(s.calls == 0 for s in quote_sources)

    @pytest.mark.asyncio
    async def test_source_failure_aborts_before_writing(self, make_agent, fake_ledger):
        quote_sources = [QuoteSource(0, 4.2), QuoteSource(1, 9.9, error=SourceUnavailable("P1", "down"))]

        report = await make_agent(quote_sources).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.DECIDING
        assert isinstance(report.error, SourceUnavailable)
        assert report.decision is None
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_unrepresentable_quote_fails_at_deciding(self, make_agent, fake_ledger):
        report = await make_agent(sources(4.2, 1e30)).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.DECIDING
        assert isinstance(report.error, PolicyError)
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_raise_for_failure_wraps_cause(self, make_agent, credential):
        quote_sources = [QuoteSource(0, 4.2), QuoteSource(1, 9.9, error=SourceUnavailable("P1", "down"))]
        report = await make_agent(quote_sources).run_cycle()

        with pytest.raises(ReconciliationError) as exc:
            report.raise_for_failure()
        assert exc.value.stage == "deciding"
        assert exc.value.details["cause_code"] == "SOURCE_UNAVAILABLE"
        assert exc.value.details["last_state"]["current_apy_bps"] == 420

    @pytest.mark.asyncio
    async def test_deadline_bounds_rate_lookups(self, make_agent, fake_ledger):
        quote_sources = [QuoteSource(0, 4.2), QuoteSource(1, 9.9, delay=1.0)]

        report = await make_agent(quote_sources).run_cycle(deadline_seconds=0.2)

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.DECIDING
        assert isinstance(report.error, SourceUnavailable)
        assert fake_ledger.transitions == []


# =============================================================================
# TEST: Write outcomes
# =============================================================================

class TestWriteOutcomes:

    @pytest.mark.asyncio
    async def test_rejected_write_is_not_retried(self, make_agent, fake_ledger):
        fake_ledger.fail_with = WriteRejected("insufficient funds for gas")

        report = await make_agent(sources(4.2, 4.9)).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.WRITING
        assert report.recommendation == RECOMMEND_REREAD
        assert fake_ledger.transitions == [(1, 490)]

    @pytest.mark.asyncio
    async def test_foreign_credential_never_submits(self, make_agent, fake_ledger, other_credential):
        report = await make_agent(sources(4.2, 4.9), agent_credential=other_credential).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert isinstance(report.error, Unauthorized)
        assert fake_ledger.transitions == []

    @pytest.mark.asyncio
    async def test_timed_out_write_that_landed(self, make_agent, fake_ledger, handle, credential):
        fake_ledger.transition_delay = 0.5
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05, finality_timeout=0.05)

        report = await make_agent(sources(4.2, 4.9), store=store).run_cycle()

        assert report.outcome == CycleOutcome.SWITCHED_ON_REREAD
        assert report.ok
        assert isinstance(report.error, WriteTimeout)
        assert report.state_after == AllocationRecord(credential.address, 1, 490)
        assert fake_ledger.transitions == [(1, 490)]
        await wait_for_pending_write(store)

    @pytest.mark.asyncio
    async def test_timed_out_write_that_did_not_land(self, make_agent, fake_ledger, handle):
        fake_ledger.transition_delay = 0.5
        fake_ledger.apply_writes = False
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05, finality_timeout=0.05)

        report = await make_agent(sources(4.2, 4.9), store=store).run_cycle()

        assert report.outcome == CycleOutcome.FAILED
        assert report.stage == CycleStage.WRITING
        assert isinstance(report.error, WriteTimeout)
        assert report.recommendation == RECOMMEND_REREAD
        assert report.state_after.current_protocol_id == 0
        await wait_for_pending_write(store)

    @pytest.mark.asyncio
    async def test_next_cycle_refuses_while_a_write_is_in_flight(self, make_agent, fake_ledger, handle):
        fake_ledger.transition_delay = 0.5
        fake_ledger.apply_writes = False
        store = AllocationStateStore(fake_ledger, handle, call_timeout=0.05, finality_timeout=0.05)
        agent = make_agent(sources(4.2, 4.9), store=store)

        first = await agent.run_cycle()
        second = await agent.run_cycle()

        assert first.outcome == CycleOutcome.FAILED
        assert isinstance(first.error, WriteTimeout)
        assert second.outcome == CycleOutcome.FAILED
        assert isinstance(second.error, WriteRejected)
        assert "in flight" in str(second.error)
        assert second.recommendation == RECOMMEND_REREAD
        assert fake_ledger.transitions == [(1, 490)]

        await wait_for_pending_write(store)
        assert not store.write_in_flight

    @pytest.mark.asyncio
    async def test_deadline_during_write_forces_reread(self, make_agent, fake_ledger, state_store):
        fake_ledger.transition_delay = 0.5

        report = await make_agent(sources(4.2, 4.9)).run_cycle(deadline_seconds=0.2)

        assert report.outcome == CycleOutcome.SWITCHED_ON_REREAD
        assert fake_ledger.reads == 2
        await wait_for_pending_write(state_store)

    @pytest.mark.asyncio
    async def test_cancelled_write_rereads_then_cancels(self, make_agent, fake_ledger, state_store):
        fake_ledger.transition_delay = 0.5
        task = asyncio.create_task(make_agent(sources(4.2, 4.9)).run_cycle())

        await asyncio.sleep(0.2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert fake_ledger.transitions == [(1, 490)]
        assert fake_ledger.reads == 2
        await wait_for_pending_write(state_store)

    @pytest.mark.asyncio
    async def test_mismatch_after_confirmed_write_is_anomaly(self, make_agent, fake_ledger):
        fake_ledger.drift_bps = 1

        report = await make_agent(sources(4.2, 4.9)).run_cycle()

        assert report.outcome == CycleOutcome.ANOMALY
        assert not report.ok
        assert report.state_after.current_apy_bps == 491
        with pytest.raises(ReconciliationError):
            report.raise_for_failure()
