#!/usr/bin/env python3
"""
⏰ Timeout Scheduler
Periodic sweeps that drive automatic escrow transitions through the coordinator

Each job kind owns a ``JobGuard``; a sweep that finds its guard held is skipped
rather than queued. The guard only prevents self-overlap inside this process.
Safety against every other writer comes from the record store's compare-and-set.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..core.exceptions import DatabaseError, EscrowError, InvalidTransitionError, StaleStateError
from ..core.models import ActorProof, Escrow, Transition
from ..utils.production_logger import LoggerFactory
from ..utils.timeutil import isoformat, utcnow
from .coordinator import ReconciliationCoordinator
from .reconciliation import ReconciliationService


class JobKind(str, Enum):
    AUTO_RELEASE = 'auto_release'
    AUTO_REFUND = 'auto_refund'
    EXPIRY = 'expiry'
    RECONCILIATION = 'reconciliation'
    BACKFILL = 'backfill'


class JobGuard:
    """Non-blocking mutual exclusion for one job kind."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


@dataclass
class SweepReport:
    job: JobKind
    started_at: datetime
    skipped: bool = False
    found: int = 0
    processed: int = 0
    raced: int = 0
    failed: int = 0
    ledger_pending: int = 0
    divergences: int = 0
    duration: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'job': self.job.value,
            'startedAt': isoformat(self.started_at),
            'skipped': self.skipped,
            'found': self.found,
            'processed': self.processed,
            'raced': self.raced,
            'failed': self.failed,
            'ledgerPending': self.ledger_pending,
            'divergences': self.divergences,
            'durationMs': round(self.duration * 1000, 2),
        }


class TimeoutScheduler:
    """Owns the sweep loops; every transition goes through ``coordinator.apply``."""

    def __init__(self, coordinator: ReconciliationCoordinator, config,
                 reconciliation: Optional[ReconciliationService] = None, clock=utcnow):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.config = config
        self.reconciliation = reconciliation
        self.clock = clock
        self.logger = LoggerFactory.get_scheduler_logger()

        self.guards: Dict[JobKind, JobGuard] = {kind: JobGuard(kind.value) for kind in JobKind}
        self.last_reports: Dict[JobKind, SweepReport] = {}

        self.is_running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._thread: Optional[threading.Thread] = None

        self._jobs: Dict[JobKind, Callable] = {
            JobKind.AUTO_RELEASE: self.run_auto_release,
            JobKind.AUTO_REFUND: self.run_auto_refund,
            JobKind.EXPIRY: self.run_expiry,
            JobKind.RECONCILIATION: self.run_reconciliation,
            JobKind.BACKFILL: self.run_backfill,
        }

    @property
    def batch_size(self) -> int:
        return self.config.scheduler.batch_size

    def intervals(self) -> Dict[JobKind, int]:
        scheduler = self.config.scheduler
        intervals = {
            JobKind.AUTO_RELEASE: scheduler.auto_release_interval,
            JobKind.AUTO_REFUND: scheduler.auto_refund_interval,
            JobKind.EXPIRY: scheduler.expiry_interval,
        }
        if self.reconciliation is not None:
            intervals[JobKind.RECONCILIATION] = scheduler.reconciliation_interval
        if self.coordinator.gateway is not None:
            intervals[JobKind.BACKFILL] = scheduler.backfill_interval
        return intervals

    # Sweeps

    async def _drive(self, report: SweepReport, candidates: List[Escrow], transition: Transition,
                     now: datetime) -> SweepReport:
        report.found = len(candidates)
        for escrow in candidates:
            try:
                result = await self.coordinator.apply(escrow.id, transition, ActorProof.system(), now=now)
            except (StaleStateError, InvalidTransitionError) as e:
                # Another actor moved the record after it was selected.
                report.raced += 1
                self.logger.info("Sweep item lost race", job=report.job.value,
                                 escrow_id=escrow.id, reason=str(e))
                continue
            except (EscrowError, DatabaseError) as e:
                report.failed += 1
                report.errors.append(f"{escrow.id}: {e}")
                self.logger.error("Sweep item failed", job=report.job.value,
                                  escrow_id=escrow.id, error=str(e), error_type=type(e).__name__)
                continue
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{escrow.id}: {type(e).__name__}: {e}")
                self.logger.exception("Unexpected error in sweep item", job=report.job.value,
                                      escrow_id=escrow.id, error=str(e), error_type=type(e).__name__)
                continue

            if result.changed:
                report.processed += 1
                if result.ledger_pending:
                    report.ledger_pending += 1
            else:
                report.raced += 1
        return report

    async def run_auto_release(self, now: datetime) -> SweepReport:
        report = SweepReport(JobKind.AUTO_RELEASE, now)
        candidates = self.store.due_for_auto_release(now, limit=self.batch_size)
        return await self._drive(report, candidates, Transition.AUTO_RELEASE, now)

    async def run_auto_refund(self, now: datetime) -> SweepReport:
        report = SweepReport(JobKind.AUTO_REFUND, now)
        candidates = self.store.due_for_auto_refund(now, limit=self.batch_size)
        return await self._drive(report, candidates, Transition.AUTO_REFUND, now)

    async def run_expiry(self, now: datetime) -> SweepReport:
        report = SweepReport(JobKind.EXPIRY, now)
        candidates = self.store.due_for_expiry(now, limit=self.batch_size)
        return await self._drive(report, candidates, Transition.EXPIRE, now)

    async def run_reconciliation(self, now: datetime) -> SweepReport:
        report = SweepReport(JobKind.RECONCILIATION, now)
        if self.reconciliation is None:
            return report
        result = await self.reconciliation.run(now)
        report.found = result.checked + result.failed
        report.processed = result.checked
        report.failed = result.failed
        report.divergences = len(result.divergences)
        return report

    async def run_backfill(self, now: datetime) -> SweepReport:
        report = SweepReport(JobKind.BACKFILL, now)
        candidates = self.store.pending_ledger_backfill(limit=self.batch_size)
        report.found = len(candidates)
        for escrow in candidates:
            try:
                if await self.coordinator.backfill_ledger_id(escrow.id):
                    report.processed += 1
            except (EscrowError, DatabaseError) as e:
                report.failed += 1
                report.errors.append(f"{escrow.id}: {e}")
                self.logger.warning("Ledger id backfill failed", escrow_id=escrow.id, error=str(e))
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{escrow.id}: {type(e).__name__}: {e}")
                self.logger.exception("Unexpected error in ledger id backfill", escrow_id=escrow.id,
                                      error=str(e))
        return report

    async def run_job(self, kind: JobKind, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep unless the same kind is already running."""
        now = now or self.clock()
        guard = self.guards[kind]
        if not guard.try_acquire():
            self.logger.warning("Sweep already running, skipping", job=kind.value)
            return SweepReport(kind, now, skipped=True)

        start_time = time.time()
        try:
            report = await self._jobs[kind](now)
        finally:
            guard.release()

        report.duration = time.time() - start_time
        self.last_reports[kind] = report
        self.logger.log_sweep(kind.value, report.found, report.processed, report.raced,
                              report.failed, report.duration)
        return report

    async def run_all_now(self, now: Optional[datetime] = None) -> List[SweepReport]:
        """Run every configured sweep once, in order."""
        now = now or self.clock()
        return [await self.run_job(kind, now) for kind in self.intervals()]

    # Loops

    async def _job_loop(self, kind: JobKind, interval: int):
        self.logger.info("Starting sweep loop", job=kind.value, interval_seconds=interval)
        while self.is_running:
            try:
                await self.run_job(kind)
            except Exception as e:
                self.logger.error("Error in sweep loop", job=kind.value, error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def run_forever(self):
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        await asyncio.gather(*(self._job_loop(kind, interval)
                               for kind, interval in self.intervals().items()))
        self.logger.info("Scheduler loops finished")

    def start(self, background: bool = False):
        """Run the sweep loops; in a daemon thread when ``background`` is set."""
        if self.is_running:
            self.logger.warning("Scheduler is already running")
            return

        self.is_running = True
        if background:
            self._thread = threading.Thread(target=asyncio.run, args=(self.run_forever(),),
                                            name='vouch-scheduler', daemon=True)
            self._thread.start()
            return

        try:
            asyncio.run(self.run_forever())
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            self.is_running = False

    def stop(self, timeout: Optional[float] = None):
        if not self.is_running:
            return
        self.logger.info("Stopping scheduler")
        self.is_running = False
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)
        if self._thread is not None:
            self._thread.join(timeout)

    def get_status(self) -> Dict[str, object]:
        return {
            'is_running': self.is_running,
            'jobs': {kind.value: {'interval_seconds': interval, 'running': self.guards[kind].held}
                     for kind, interval in self.intervals().items()},
            'last_reports': {kind.value: report.to_dict() for kind, report in self.last_reports.items()},
        }
