"""
Yield Pilot - Background Scheduler
Runs reconciliation cycles on a fixed interval
"""

import logging
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from yield_pilot.agents.yield_pilot_agent import CycleReport, YieldPilotAgent

logger = logging.getLogger("Scheduler")

HISTORY_SIZE = 50


class CycleScheduler:
    """
    Manages the periodic reconciliation job.
    A cycle still running when the next one is due is not overlapped;
    missed runs collapse into one.
    """

    def __init__(self, agent: YieldPilotAgent, interval_minutes: int, deadline_seconds: Optional[float] = None):
        self.agent = agent
        self.interval_minutes = interval_minutes
        self.deadline_seconds = deadline_seconds
        self.history: List[CycleReport] = []
        self.scheduler = AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self):
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self.interval_minutes),
            id="reconcile",
            name="Reconcile allocation",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"📅 Reconciliation every {self.interval_minutes} min")

    async def run_once(self) -> CycleReport:
        report = await self.agent.run_cycle(deadline_seconds=self.deadline_seconds)
        self.history.append(report)
        del self.history[:-HISTORY_SIZE]
        if report.ok:
            logger.info(f"Cycle finished: {report.outcome.value}")
        else:
            logger.error(f"Cycle finished: {report.outcome.value} ({report.recommendation})")
        return report

    def start(self):
        self.scheduler.start()
        logger.info("⏰ Reconciliation scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("⏰ Reconciliation scheduler stopped")
