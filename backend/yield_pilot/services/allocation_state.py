"""
Allocation State Service
Async reader/writer for the authoritative allocation record.

Ledger calls are blocking (web3 HTTPProvider), so they run in the default
executor and every call is bounded with asyncio.wait_for. Writes get the
ledger's finality wait on top of the per-call timeout.
"""

import asyncio
import logging
from typing import Optional

from yield_pilot.infrastructure.errors import (
    StateNotFound,
    StateReadError,
    Unauthorized,
    WriteRejected,
    WriteTimeout,
)
from yield_pilot.infrastructure.ledger import AuthorityCredential, LedgerClient
from yield_pilot.models import (
    MAX_APY_BPS,
    MAX_PROTOCOL_ID,
    AllocationRecord,
    StateHandle,
    SwitchDecision,
    TransactionReceipt,
)

logger = logging.getLogger("AllocationState")


class AllocationStateStore:
    """
    Read/write capability for one allocation record.

    At most one transition is in flight per store. A write that timed out
    keeps running in its executor thread, and further writes are refused
    until it finishes.

    Precondition: this store's credential is the only writer of the record.
    Two agents reading the same pre-switch state could both decide to switch;
    the ledger's own conflict handling is then the only backstop.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        handle: StateHandle,
        call_timeout: float = 15.0,
        finality_timeout: float = 120.0,
    ):
        self.ledger = ledger
        self.handle = handle
        self.call_timeout = call_timeout
        self.finality_timeout = finality_timeout
        self._pending_write: Optional[asyncio.Future] = None

    async def read_state(self, timeout: Optional[float] = None) -> AllocationRecord:
        """Fetch the current record. Raises StateNotFound / StateReadError."""
        timeout = self.call_timeout if timeout is None else min(timeout, self.call_timeout)
        loop = asyncio.get_running_loop()
        try:
            record = await asyncio.wait_for(
                loop.run_in_executor(None, self.ledger.read, self.handle),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise StateReadError(f"Reading {self.handle} timed out after {timeout}s", e) from e

        if record is None:
            raise StateNotFound(self.handle.state_id)

        logger.debug(f"State {self.handle}: {record.to_dict()}")
        return record

    @property
    def write_in_flight(self) -> bool:
        return self._pending_write is not None and not self._pending_write.done()

    async def write_state(
        self,
        decision: SwitchDecision,
        credential: AuthorityCredential,
        current: Optional[AllocationRecord] = None,
        timeout: Optional[float] = None,
    ) -> TransactionReceipt:
        """
        Submit one signed transition setting protocol and APY together.

        Args:
            decision: switch decision carrying the target values
            credential: authority signing key
            current: last record read, used to reject a foreign credential
                before any transaction is built
            timeout: overall bound (capped at call + finality timeout)
        """
        if not 0 <= decision.target_protocol_id <= MAX_PROTOCOL_ID:
            raise WriteRejected(f"Protocol id {decision.target_protocol_id} does not fit the record")
        if not 0 <= decision.target_apy_bps <= MAX_APY_BPS:
            raise WriteRejected(f"APY {decision.target_apy_bps} bps does not fit the record")

        if current is not None and current.authority.lower() != credential.address.lower():
            raise Unauthorized(expected=current.authority, actual=credential.address)

        budget = self.call_timeout + self.finality_timeout
        timeout = budget if timeout is None else min(timeout, budget)

        if self.write_in_flight:
            raise WriteRejected("previous write still in flight")

        logger.info(
            f"Writing protocol={decision.target_protocol_id} "
            f"apy_bps={decision.target_apy_bps} to {self.handle}"
        )

        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(
            None,
            self.ledger.transition,
            self.handle,
            decision.target_protocol_id,
            decision.target_apy_bps,
            credential,
        )
        pending.add_done_callback(self._write_finished)
        self._pending_write = pending
        try:
            # Shielded: a timeout or cancel leaves the transition running and tracked
            receipt = await asyncio.wait_for(asyncio.shield(pending), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise WriteTimeout(timeout) from e

        logger.info(f"✅ Transition confirmed: {receipt.tx_hash} (block {receipt.block_number})")
        return receipt

    def _write_finished(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug(f"Write to {self.handle} ended with {error.__class__.__name__}: {error}")
