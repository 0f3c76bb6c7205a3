"""
Settlement Ledger Tests
Single-use reservation of payment proofs

Run: python -m pytest tests/test_settlement.py -v
"""

import asyncio

import pytest

from yield_pilot.infrastructure.errors import AlreadySettled
from yield_pilot.payments.settlement import SettlementLedger, SettlementStatus


@pytest.fixture
def ledger(clock):
    return SettlementLedger(clock=clock, retention_seconds=3600)


class TestSettlementLedger:

    @pytest.mark.asyncio
    async def test_reserve_then_settle(self, ledger, clock):
        await ledger.reserve("payer:1", clock() + 300)
        await ledger.mark_settled("payer:1", "0xabc")

        entry = ledger.get("payer:1")
        assert entry.status == SettlementStatus.SETTLED
        assert entry.transaction == "0xabc"

    @pytest.mark.asyncio
    async def test_second_reservation_fails(self, ledger, clock):
        await ledger.reserve("payer:1", clock() + 300)

        with pytest.raises(AlreadySettled):
            await ledger.reserve("payer:1", clock() + 300)

    @pytest.mark.asyncio
    async def test_failed_settlement_stays_spent(self, ledger, clock):
        await ledger.reserve("payer:1", clock() + 300)
        await ledger.mark_failed("payer:1", "facilitator unreachable")

        assert ledger.get("payer:1").status == SettlementStatus.FAILED
        with pytest.raises(AlreadySettled):
            await ledger.reserve("payer:1", clock() + 300)

    @pytest.mark.asyncio
    async def test_concurrent_reservations_admit_one(self, ledger, clock):
        results = await asyncio.gather(
            *[ledger.reserve("payer:1", clock() + 300) for _ in range(5)],
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, AlreadySettled)) == 4

    @pytest.mark.asyncio
    async def test_entries_pruned_after_retention(self, ledger, clock):
        await ledger.reserve("payer:1", clock() + 300)
        clock.advance(300 + 3601)

        await ledger.reserve("payer:2", clock() + 300)

        assert not ledger.contains("payer:1")
        assert ledger.contains("payer:2")

    @pytest.mark.asyncio
    async def test_entries_kept_within_retention(self, ledger, clock):
        await ledger.reserve("payer:1", clock() + 300)
        clock.advance(300 + 60)

        with pytest.raises(AlreadySettled):
            await ledger.reserve("payer:1", clock() + 300)

    @pytest.mark.asyncio
    async def test_stats(self, ledger, clock):
        await ledger.reserve("a", clock() + 300)
        await ledger.reserve("b", clock() + 300)
        await ledger.reserve("c", clock() + 300)
        await ledger.mark_settled("a", "0x1")
        await ledger.mark_failed("b", "nope")

        assert ledger.stats() == {"pending": 1, "settled": 1, "failed": 1, "total": 3}
