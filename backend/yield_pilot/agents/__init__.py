"""
Yield Pilot agents

- switch_policy: pure switch decision
- yield_pilot_agent: reconciliation loop around the allocation record
"""

from .switch_policy import decide, select_best, percent_to_bps, DEFAULT_THRESHOLD_PERCENT
from .yield_pilot_agent import YieldPilotAgent, CycleReport, CycleStage, CycleOutcome

__all__ = [
    "decide",
    "select_best",
    "percent_to_bps",
    "DEFAULT_THRESHOLD_PERCENT",
    "YieldPilotAgent",
    "CycleReport",
    "CycleStage",
    "CycleOutcome",
]
