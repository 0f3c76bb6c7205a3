"""
Yield Pilot Agent - reconciliation loop
Brings the on-chain allocation record in line with the best available APY

Cycle:
IDLE -> READING -> DECIDING -> NOOP -> IDLE
                            -> WRITING -> VERIFYING -> IDLE

Responsibilities:
- Read the authoritative allocation record
- Fetch every tracked protocol's APY fresh
- Ask the switch policy whether to move
- Write the transition and confirm it landed
- Report exactly what happened, including uncertain writes
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from yield_pilot.agents.switch_policy import decide
from yield_pilot.data_sources import RateSource, fetch_all
from yield_pilot.infrastructure.config import PolicyConfig
from yield_pilot.infrastructure.errors import (
    ReconciliationError,
    SourceUnavailable,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
    YieldPilotError,
)
from yield_pilot.infrastructure.ledger import AuthorityCredential
from yield_pilot.models import AllocationRecord, RateObservation, SwitchDecision, TransactionReceipt
from yield_pilot.sentry_config import capture_cycle_breadcrumb
from yield_pilot.services.allocation_state import AllocationStateStore

logger = logging.getLogger("YieldPilot")

RECOMMEND_REREAD = "Re-read the allocation state before retrying; the write may or may not have landed"
RECOMMEND_RETRY = "Retry on the next cycle"


class CycleStage(str, Enum):
    IDLE = "idle"
    READING = "reading"
    DECIDING = "deciding"
    NOOP = "noop"
    WRITING = "writing"
    VERIFYING = "verifying"


class CycleOutcome(str, Enum):
    NO_SWITCH = "no_switch"
    SWITCHED = "switched"
    SWITCHED_ON_REREAD = "switched_on_reread"  # write timed out but the re-read shows it landed
    FAILED = "failed"
    ANOMALY = "anomaly"  # confirmed write, but the record reads back different


@dataclass
class CycleReport:
    """Everything one cycle saw and did"""
    outcome: Optional[CycleOutcome] = None
    stage: CycleStage = CycleStage.IDLE
    state_before: Optional[AllocationRecord] = None
    observations: List[RateObservation] = field(default_factory=list)
    decision: Optional[SwitchDecision] = None
    receipt: Optional[TransactionReceipt] = None
    state_after: Optional[AllocationRecord] = None
    error: Optional[BaseException] = None
    recommendation: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (CycleOutcome.NO_SWITCH, CycleOutcome.SWITCHED, CycleOutcome.SWITCHED_ON_REREAD)

    @property
    def last_state(self) -> Optional[AllocationRecord]:
        return self.state_after or self.state_before

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        cause = self.error or RuntimeError(f"cycle ended with outcome {self.outcome}")
        raise ReconciliationError(
            self.stage.value,
            cause,
            last_state=self.last_state.to_dict() if self.last_state else None,
            recommendation=self.recommendation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value if self.outcome else None,
            "stage": self.stage.value,
            "state_before": self.state_before.to_dict() if self.state_before else None,
            "observations": [o.to_dict() for o in self.observations],
            "decision": self.decision.to_dict() if self.decision else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "state_after": self.state_after.to_dict() if self.state_after else None,
            "error": str(self.error) if self.error else None,
            "recommendation": self.recommendation,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class YieldPilotAgent:
    """
    Runs reconciliation cycles for one allocation record.

    Cycles in this process never interleave. Other processes writing the
    same record with the same credential are not excluded.
    """

    def __init__(
        self,
        state_store: AllocationStateStore,
        sources: Sequence[RateSource],
        credential: AuthorityCredential,
        policy: Optional[PolicyConfig] = None,
    ):
        self.state_store = state_store
        self.sources = list(sources)
        self.credential = credential
        self.policy = policy or PolicyConfig()
        self._lock = asyncio.Lock()

    async def run_cycle(self, deadline_seconds: Optional[float] = None) -> CycleReport:
        async with self._lock:
            report = CycleReport()
            try:
                await self._run(report, deadline_seconds)
            finally:
                report.finished_at = datetime.now()
            return report

    async def _run(self, report: CycleReport, deadline_seconds: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if deadline_seconds is None else loop.time() + deadline_seconds

        def remaining() -> Optional[float]:
            if deadline is None:
                return None
            return max(0.0, deadline - loop.time())

        # READING
        self._enter(report, CycleStage.READING)
        try:
            current = await self.state_store.read_state(timeout=remaining())
        except YieldPilotError as e:
            return self._fail(report, e, RECOMMEND_RETRY)
        report.state_before = current
        logger.info(
            f"Current allocation: protocol {current.current_protocol_id} "
            f"at {current.current_apy_percent:.2f}%"
        )

        # DECIDING
        self._enter(report, CycleStage.DECIDING)
        try:
            report.observations = await asyncio.wait_for(fetch_all(self.sources), timeout=remaining())
        except asyncio.TimeoutError:
            return self._fail(report, SourceUnavailable("rate sources", "Rate lookups exceeded the cycle deadline"), RECOMMEND_RETRY)
        except YieldPilotError as e:
            return self._fail(report, e, RECOMMEND_RETRY)

        for observation in report.observations:
            logger.info(f"  {observation.protocol_name} (id={observation.protocol_id}): {observation.apy_percent:.2f}%")

        try:
            decision = decide(
                current,
                report.observations,
                threshold_percent=self.policy.threshold_percent,
                rounding=self.policy.rounding,
            )
        except YieldPilotError as e:
            return self._fail(report, e, "Check the tracked protocol quotes and policy settings")
        report.decision = decision

        if not decision.should_switch:
            self._enter(report, CycleStage.NOOP)
            report.outcome = CycleOutcome.NO_SWITCH
            logger.info(f"⏸️ No switch (diff {decision.reason_diff_percent:.2f}%, threshold {self.policy.threshold_percent}%)")
            return

        logger.info(
            f"🔀 Switching to protocol {decision.target_protocol_id} at {decision.target_apy_bps} bps "
            f"(+{decision.reason_diff_percent:.2f}%)"
        )

        # WRITING
        self._enter(report, CycleStage.WRITING, decision.to_dict())
        try:
            report.receipt = await self.state_store.write_state(
                decision, self.credential, current=current, timeout=remaining()
            )
        except (WriteRejected, Unauthorized) as e:
            return self._fail(report, e, RECOMMEND_REREAD)
        except WriteTimeout as e:
            return await self._reread_uncertain_write(report, e)
        except asyncio.CancelledError as e:
            await self._reread_uncertain_write(report, e)
            raise
        except YieldPilotError as e:
            return self._fail(report, e, RECOMMEND_REREAD)

        # VERIFYING (not capped by the deadline: the write already happened)
        self._enter(report, CycleStage.VERIFYING, report.receipt.to_dict())
        try:
            after = await self.state_store.read_state()
        except YieldPilotError as e:
            return self._fail(report, e, RECOMMEND_REREAD)
        report.state_after = after

        if after.matches(decision.target_protocol_id, decision.target_apy_bps):
            report.outcome = CycleOutcome.SWITCHED
            logger.info(f"✅ Allocation now protocol {after.current_protocol_id} at {after.current_apy_percent:.2f}%")
        else:
            report.outcome = CycleOutcome.ANOMALY
            report.recommendation = "Investigate: the confirmed transition is not reflected in the record"
            logger.error(
                f"🚨 State mismatch after confirmed write {report.receipt.tx_hash}: "
                f"expected {decision.target_protocol_id}/{decision.target_apy_bps}, got {after.to_dict()}"
            )

    async def _reread_uncertain_write(self, report: CycleReport, error: BaseException) -> None:
        """The write may have landed; only a fresh read can tell."""
        decision = report.decision
        logger.warning(f"⚠️ Write outcome unknown ({error.__class__.__name__}); re-reading state")
        try:
            after = await self.state_store.read_state()
        except YieldPilotError as read_error:
            logger.error(f"Re-read after uncertain write failed: {read_error}")
            self._fail(report, error, RECOMMEND_REREAD)
            return

        report.state_after = after
        if after.matches(decision.target_protocol_id, decision.target_apy_bps):
            report.outcome = CycleOutcome.SWITCHED_ON_REREAD
            report.error = error
            logger.info("✅ Re-read shows the transition landed")
        else:
            self._fail(report, error, RECOMMEND_REREAD)

    def _enter(self, report: CycleReport, stage: CycleStage, details: dict = None) -> None:
        report.stage = stage
        capture_cycle_breadcrumb(stage.value, details)

    @staticmethod
    def _fail(report: CycleReport, error: BaseException, recommendation: str) -> None:
        report.outcome = CycleOutcome.FAILED
        report.error = error
        report.recommendation = recommendation
        logger.error(f"❌ Cycle failed during {report.stage.value}: {error}")
