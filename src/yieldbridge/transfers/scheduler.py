"""Resumption scheduler.

Periodically re-drives records that are waiting on something outside the
process (an attestation, a receipt, a write whose RPC calls failed) so
completion never depends on the request that started a transfer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from yieldbridge.errors import TransientExternalError
from yieldbridge.transfers.orchestrator import TransferOrchestrator
from yieldbridge.transfers.records import Direction, TransferRecord, TransferStatus
from yieldbridge.transfers.store import TransferStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Counts from one sweep."""

    examined: int = 0
    completed: int = 0
    deferred: int = 0
    failed: int = 0
    unchanged: int = 0

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "completed": self.completed,
            "deferred": self.deferred,
            "failed": self.failed,
            "unchanged": self.unchanged,
        }


class ResumptionScheduler:
    """Sweeps stalled transfers every ``interval`` seconds."""

    def __init__(
        self,
        orchestrator: TransferOrchestrator,
        store: TransferStore,
        interval: float = 120.0,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.interval = interval
        self._sweep_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._passes: set[asyncio.Task] = set()
        self.last_result: Optional[SweepResult] = None

    @property
    def running(self) -> bool:
        return self._sweep_lock.locked()

    async def _candidates(self) -> list[TransferRecord]:
        """Every stalled record, oldest first within each group.

        Withdraws awaiting attestation come first, then deposits, then
        unconfirmed writes, then located or attested records whose write
        never went out.
        """
        batches = [
            await self.store.list_awaiting_attestation(Direction.WITHDRAW),
            await self.store.list_awaiting_attestation(Direction.DEPOSIT),
            await self.store.list_awaiting_confirmation(),
            await self.store.list_awaiting_submission(),
        ]
        seen: set[str] = set()
        records = []
        for batch in batches:
            for record in batch:
                if record.id not in seen:
                    seen.add(record.id)
                    records.append(record)
        return records

    async def run_once(self) -> Optional[SweepResult]:
        """Run a single sweep.

        Returns:
            Sweep counts, or None if another sweep was still running
        """
        if self._sweep_lock.locked():
            logger.info("Previous resumption sweep still running, skipping")
            return None

        async with self._sweep_lock:
            result = SweepResult()
            records = await self._candidates()
            if not records:
                logger.debug("No stalled transfers")
                self.last_result = result
                return result

            logger.info(f"Resuming {len(records)} pending transfers...")

            for record in records:
                result.examined += 1
                try:
                    updated = await self.orchestrator.resume(record.id, max_attempts=1)
                except TransientExternalError as e:
                    logger.debug(f"Transfer {record.id} deferred: {e}")
                    result.deferred += 1
                    continue
                except Exception as e:
                    logger.error(f"Error resuming transfer {record.id}: {e}")
                    result.failed += 1
                    continue

                if updated.status == TransferStatus.COMPLETED:
                    result.completed += 1
                elif updated.status == TransferStatus.FAILED:
                    result.failed += 1
                else:
                    result.unchanged += 1

            logger.info(
                f"Sweep done: {result.examined} examined, {result.completed} completed, "
                f"{result.deferred} deferred, {result.failed} failed"
            )
            self.last_result = result
            return result

    async def _sweep(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error(f"Resumption sweep error: {e}")

    async def run(self) -> None:
        """Run continuous sweep loop until ``stop``."""
        logger.info(f"Starting resumption scheduler (interval: {self.interval}s)")
        self._stopped.clear()

        while not self._stopped.is_set():
            # Each pass runs on its own task; a slow pass never delays the tick
            task = asyncio.create_task(self._sweep(), name="resumption-sweep")
            self._passes.add(task)
            task.add_done_callback(self._passes.discard)

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Resumption scheduler stopped")

    async def stop(self) -> None:
        """Stop the loop and wait for an in-progress pass."""
        self._stopped.set()
        if self._passes:
            await asyncio.gather(*self._passes, return_exceptions=True)
