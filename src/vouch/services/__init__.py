from .coordinator import ReconciliationCoordinator
from .payments import PaymentService
from .reconciliation import Divergence, ReconciliationReport, ReconciliationService
from .scheduler import JobGuard, JobKind, SweepReport, TimeoutScheduler

__all__ = [
    'Divergence',
    'JobGuard',
    'JobKind',
    'PaymentService',
    'ReconciliationCoordinator',
    'ReconciliationReport',
    'ReconciliationService',
    'SweepReport',
    'TimeoutScheduler',
]
