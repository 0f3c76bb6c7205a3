"""
Settlement ledger
Single-use bookkeeping for payment proofs.

A proof id is reserved before settlement starts and is never released, so
a proof presented twice (concurrently or later) is settled at most once.
In-memory (use Redis in production with more than one gate process).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from yield_pilot.infrastructure.errors import AlreadySettled

logger = logging.getLogger("SettlementLedger")

# Spent proofs are kept this long after their authorization expires
RETENTION_SECONDS = 3600


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


@dataclass
class SettlementEntry:
    proof_id: str
    status: SettlementStatus
    expires_at: float
    transaction: Optional[str] = None
    reason: Optional[str] = None


class SettlementLedger:

    def __init__(self, clock: Callable[[], float] = time.time, retention_seconds: float = RETENTION_SECONDS):
        self._entries: Dict[str, SettlementEntry] = {}
        self._lock = asyncio.Lock()
        self.clock = clock
        self.retention_seconds = retention_seconds

    async def reserve(self, proof_id: str, expires_at: float) -> SettlementEntry:
        """Claim a proof id for settlement. Raises AlreadySettled if it was ever seen."""
        async with self._lock:
            self._prune()
            if proof_id in self._entries:
                logger.warning(f"⚠️ Replay of proof {proof_id} ({self._entries[proof_id].status.value})")
                raise AlreadySettled(proof_id)
            entry = SettlementEntry(proof_id, SettlementStatus.PENDING, expires_at)
            self._entries[proof_id] = entry
            return entry

    async def mark_settled(self, proof_id: str, transaction: str) -> None:
        async with self._lock:
            entry = self._entries[proof_id]
            entry.status = SettlementStatus.SETTLED
            entry.transaction = transaction

    async def mark_failed(self, proof_id: str, reason: str) -> None:
        # Stays reserved; the authorization may still be submitted elsewhere
        async with self._lock:
            entry = self._entries[proof_id]
            entry.status = SettlementStatus.FAILED
            entry.reason = reason

    def contains(self, proof_id: str) -> bool:
        return proof_id in self._entries

    def get(self, proof_id: str) -> Optional[SettlementEntry]:
        return self._entries.get(proof_id)

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SettlementStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        counts["total"] = len(self._entries)
        return counts

    def _prune(self) -> None:
        cutoff = self.clock() - self.retention_seconds
        expired = [pid for pid, e in self._entries.items() if e.expires_at < cutoff]
        for pid in expired:
            del self._entries[pid]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired settlement entries")
