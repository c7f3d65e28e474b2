# src/quota_broker/reconciliation.py

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from .metrics import set_health_counts

if TYPE_CHECKING:
    from .broker import QuotaBroker

lib_logger = logging.getLogger("quota_broker")


@dataclass
class SweepReport:
    expired_exclusions: int = 0
    repaired_usage: int = 0
    cleared_exhausted_flags: int = 0
    reclaimed_leases: int = 0
    rolled_windows: int = 0
    health: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


class ReconciliationSweep:
    """
    A background task that periodically tidies the broker's state.

    Each pass only relaxes restrictions: expired exclusions are dropped,
    corrupt usage documents are rewritten with documented limits, stale
    exhaustion stamps are cleared, abandoned reservations are reclaimed and
    elapsed windows are reset. A reclaimed reservation turns into recorded
    usage (one request plus its predicted tokens), so it keeps counting
    against the windows it was already held in. Running it twice in a row
    changes nothing the second time, and it is safe to run while requests are
    in flight.
    """

    def __init__(self, broker: "QuotaBroker", interval: Optional[int] = None):
        self._broker = broker
        self._interval = interval or broker.settings.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    async def run_once(self) -> SweepReport:
        broker = self._broker
        settings = broker.settings
        await broker.initialize()

        report = SweepReport()
        report.expired_exclusions = await broker.ledger.sweep_expired(persist=False)

        now = broker.now()
        for record in broker.catalog.records():
            async with record.lock:
                binding = record.binding
                if await broker.tracker.repair(binding, persist=False):
                    report.repaired_usage += 1
                if await broker.tracker.clear_stale_exhausted_flag(
                    binding, settings.exhausted_flag_ttl_seconds, persist=False
                ):
                    report.cleared_exhausted_flags += 1
                for lease_id in record.expired_leases(now, settings.lease_ttl_seconds):
                    await broker.count_abandoned(record, record.leases.pop(lease_id))
                    report.reclaimed_leases += 1
                report.rolled_windows += await broker.tracker.roll_expired(binding, persist=False)

        await broker.persist()

        report.health = broker.health_counts()
        set_health_counts(report.health)
        self.last_report = report

        health = report.health
        lib_logger.info(
            f"Reconciliation sweep: {health['healthy']} healthy, {health['exhausted']} exhausted, "
            f"{health['excluded']} excluded, {health['disabled']} disabled binding(s); "
            f"{health['inactive_credentials']} inactive credential(s)"
        )
        if report.reclaimed_leases:
            lib_logger.warning(
                f"Reclaimed {report.reclaimed_leases} reservation(s) that never reported back"
            )
        lib_logger.debug(f"Sweep details: {report.to_dict()}")
        return report

    def start(self):
        """Starts the periodic sweep task."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            lib_logger.info(f"Reconciliation sweep started. Interval: {self._interval} seconds.")

    async def stop(self):
        """Stops the periodic sweep task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            lib_logger.info("Reconciliation sweep stopped.")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        """The main loop for the background task."""
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                lib_logger.error(f"Unexpected error in reconciliation sweep loop: {e}")
                await asyncio.sleep(self._interval)
