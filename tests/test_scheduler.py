import asyncio
import json
from datetime import timedelta

import pytest

from vouch.core.models import ActorProof, EscrowStatus as S, Transition
from vouch.services.reconciliation import ReconciliationService
from vouch.services.scheduler import JobGuard, JobKind, SweepReport, TimeoutScheduler

from conftest import SELLER

SELLER_PROOF = ActorProof.address(SELLER)


@pytest.fixture
def reconciliation(store, gateway, clock):
    return ReconciliationService(store, gateway, clock=clock)


@pytest.fixture
def scheduler(coordinator, config, reconciliation, clock):
    return TimeoutScheduler(coordinator, config, reconciliation, clock=clock)


async def _funded(coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    result = await coordinator.mark_funded(escrow.id)
    return result.escrow, result.extras['buyer_token']


def test_job_guard_is_non_blocking():
    guard = JobGuard('auto_release')
    assert guard.try_acquire()
    assert guard.held
    assert not guard.try_acquire()
    guard.release()
    assert not guard.held
    assert guard.try_acquire()


def test_intervals_depend_on_wiring(scheduler, offchain_coordinator, config):
    assert set(scheduler.intervals()) == set(JobKind)
    bare = TimeoutScheduler(offchain_coordinator, config)
    assert set(bare.intervals()) == {JobKind.AUTO_RELEASE, JobKind.AUTO_REFUND, JobKind.EXPIRY}


async def test_scenario_e_auto_refund_without_shipment(scheduler, coordinator, ledger, make_draft, clock):
    escrow, _ = await _funded(coordinator, make_draft)

    report = await scheduler.run_job(JobKind.AUTO_REFUND, escrow.funded_at + timedelta(days=31))
    assert report.found == 1
    assert report.processed == 1
    assert report.failed == 0

    refunded = coordinator.get_by_id(escrow.id)
    assert refunded.status is S.REFUNDED
    assert refunded.refunded_at == escrow.funded_at + timedelta(days=31)
    assert ledger.escrows[1]['status'] == 'REFUNDED'


async def test_auto_release_boundary(scheduler, coordinator, make_draft):
    escrow, _ = await _funded(coordinator, make_draft)
    shipped = (await coordinator.mark_shipped(escrow.id, SELLER_PROOF, 'trk123')).escrow

    early = await scheduler.run_job(JobKind.AUTO_RELEASE,
                                    shipped.shipped_at + timedelta(days=13, hours=23, minutes=59))
    assert early.found == 0
    assert coordinator.get_by_id(escrow.id).status is S.SHIPPED

    due = await scheduler.run_job(JobKind.AUTO_RELEASE, shipped.shipped_at + timedelta(days=14))
    assert due.processed == 1
    assert coordinator.get_by_id(escrow.id).status is S.RELEASED


async def test_expiry_sweep(scheduler, coordinator, make_draft, clock):
    escrow = await coordinator.create(make_draft())
    report = await scheduler.run_job(JobKind.EXPIRY, clock() + timedelta(days=7))
    assert report.processed == 1
    assert coordinator.get_by_id(escrow.id).status is S.EXPIRED


async def test_sweep_with_held_guard_is_skipped(scheduler, coordinator, make_draft, clock):
    escrow, _ = await _funded(coordinator, make_draft)
    guard = scheduler.guards[JobKind.AUTO_REFUND]
    assert guard.try_acquire()
    try:
        report = await scheduler.run_job(JobKind.AUTO_REFUND, clock() + timedelta(days=31))
    finally:
        guard.release()

    assert report.skipped
    assert report.found == 0
    assert coordinator.get_by_id(escrow.id).status is S.FUNDED
    assert JobKind.AUTO_REFUND not in scheduler.last_reports


async def test_overlapping_sweeps_process_each_record_once(coordinator, config, make_draft, clock, ledger):
    """Two schedulers stand in for two processes; only the record store arbitrates."""
    escrows = [(await _funded(coordinator, make_draft))[0] for _ in range(3)]
    first = TimeoutScheduler(coordinator, config, clock=clock)
    second = TimeoutScheduler(coordinator, config, clock=clock)
    ledger.delay = 0.01

    now = clock() + timedelta(days=31)
    reports = await asyncio.gather(first.run_job(JobKind.AUTO_REFUND, now),
                                   second.run_job(JobKind.AUTO_REFUND, now))

    assert sum(r.processed for r in reports) == len(escrows)
    assert sum(r.raced for r in reports) == len(escrows)
    assert all(r.failed == 0 for r in reports)
    assert ledger.count('refund') >= len(escrows)
    for escrow in escrows:
        assert coordinator.get_by_id(escrow.id).status is S.REFUNDED


async def test_human_action_wins_race_with_sweep(scheduler, coordinator, make_draft, clock):
    escrow, _ = await _funded(coordinator, make_draft)
    now = clock() + timedelta(days=31)
    candidates = coordinator.store.due_for_auto_refund(now)
    await coordinator.mark_shipped(escrow.id, SELLER_PROOF, 'trk123')

    report = await scheduler._drive(SweepReport(JobKind.AUTO_REFUND, now), candidates,
                                    Transition.AUTO_REFUND, now)
    assert report.raced == 1
    assert report.processed == 0
    assert coordinator.get_by_id(escrow.id).status is S.SHIPPED


async def test_ledger_outage_counts_pending(scheduler, coordinator, ledger, make_draft, clock):
    await _funded(coordinator, make_draft)
    ledger.fail('refund')
    report = await scheduler.run_job(JobKind.AUTO_REFUND, clock() + timedelta(days=31))
    assert report.processed == 1
    assert report.ledger_pending == 1


async def test_backfill_sweep(scheduler, coordinator, ledger, make_draft):
    ledger.confirm = False
    escrow = await coordinator.create(make_draft())
    ledger.unconfirmed.clear()

    report = await scheduler.run_job(JobKind.BACKFILL)
    assert report.found == 1
    assert report.processed == 1
    assert coordinator.get_by_id(escrow.id).status is S.WAITING_PAYMENT


async def test_run_all_now_reports_every_job(scheduler, coordinator, make_draft):
    await coordinator.create(make_draft())
    reports = await scheduler.run_all_now()
    assert [r.job for r in reports] == list(scheduler.intervals())
    assert not any(r.skipped for r in reports)
    status = scheduler.get_status()
    assert status['is_running'] is False
    assert set(status['last_reports']) == {kind.value for kind in JobKind}
    assert status['last_reports']['reconciliation']['processed'] == 1


def test_start_in_background_and_stop(scheduler):
    scheduler.start(background=True)
    assert scheduler.is_running
    scheduler.stop(timeout=5)
    assert not scheduler.is_running


async def test_malformed_ledger_response_does_not_abort_sweep(scheduler, coordinator, ledger, make_draft):
    shipped = []
    for _ in range(2):
        escrow, _ = await _funded(coordinator, make_draft)
        shipped.append((await coordinator.mark_shipped(escrow.id, SELLER_PROOF, 'trk123')).escrow)
    ledger.fail('releaseFunds', json.JSONDecodeError('Expecting value', '<html>', 0), once=True)

    report = await scheduler.run_job(JobKind.AUTO_RELEASE, shipped[-1].shipped_at + timedelta(days=14))
    assert report.found == 2
    assert report.processed == 2
    assert report.ledger_pending == 1
    assert report.failed == 0

    records = [coordinator.get_by_id(escrow.id) for escrow in shipped]
    assert all(record.status is S.RELEASED for record in records)
    assert sum(record.ledger_pending for record in records) == 1
    assert scheduler.last_reports[JobKind.AUTO_RELEASE] is report


async def test_unexpected_item_error_is_counted(scheduler, coordinator, make_draft, clock, monkeypatch):
    first, _ = await _funded(coordinator, make_draft)
    second, _ = await _funded(coordinator, make_draft)
    apply = coordinator.apply

    async def flaky_apply(escrow_id, *args, **kwargs):
        if escrow_id == first.id:
            raise RuntimeError('driver returned garbage')
        return await apply(escrow_id, *args, **kwargs)

    monkeypatch.setattr(coordinator, 'apply', flaky_apply)
    report = await scheduler.run_job(JobKind.AUTO_REFUND, clock() + timedelta(days=31))

    assert report.failed == 1
    assert report.processed == 1
    assert report.errors == [f'{first.id}: RuntimeError: driver returned garbage']
    assert coordinator.get_by_id(first.id).status is S.FUNDED
    assert coordinator.get_by_id(second.id).status is S.REFUNDED
