#!/usr/bin/env python3
"""
🔍 Ledger Reconciliation
Compares stored escrow status with the settlement contract and re-drives lagging settlement
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..core.exceptions import ChainCallError
from ..core.models import Escrow, EscrowStatus
from ..core.state_machine import LedgerOp
from ..database.escrow_store import EscrowStore
from ..integrations.ledger_gateway import LedgerGateway
from ..utils.production_logger import LoggerFactory, get_correlation_id
from ..utils.timeutil import isoformat, utcnow

S = EscrowStatus

# Ledger statuses consistent with each stored status.
EXPECTED_LEDGER_STATUSES: Dict[EscrowStatus, FrozenSet[str]] = {
    S.CREATED: frozenset({'CREATED', 'PENDING'}),
    S.WAITING_PAYMENT: frozenset({'CREATED', 'PENDING'}),
    S.FUNDED: frozenset({'FUNDED'}),
    S.SHIPPED: frozenset({'SHIPPED'}),
    S.DISPUTED: frozenset({'SHIPPED', 'DISPUTED'}),
    S.RELEASED: frozenset({'RELEASED'}),
    S.REFUNDED: frozenset({'REFUNDED', 'CANCELLED'}),
    S.CANCELLED: frozenset({'CREATED', 'CANCELLED'}),
    S.EXPIRED: frozenset({'CREATED', 'CANCELLED'}),
}

# Earlier ledger statuses accepted only while no ledger call is outstanding:
# a record shipped before its ledger id was attached never sent markShipped.
LAGGING_LEDGER_STATUSES: Dict[EscrowStatus, FrozenSet[str]] = {
    S.SHIPPED: frozenset({'FUNDED'}),
    S.DISPUTED: frozenset({'FUNDED'}),
}

SETTLEABLE_LEDGER_STATUSES = frozenset({'FUNDED', 'SHIPPED', 'DISPUTED'})

# Stored status -> (ledger statuses it can be pushed forward from, call to re-send)
HEAL_ACTIONS: Dict[EscrowStatus, Tuple[FrozenSet[str], LedgerOp]] = {
    S.FUNDED: (frozenset({'CREATED', 'PENDING'}), LedgerOp.MARK_FUNDED),
    S.SHIPPED: (frozenset({'FUNDED'}), LedgerOp.MARK_SHIPPED),
    S.DISPUTED: (frozenset({'FUNDED'}), LedgerOp.MARK_SHIPPED),
    S.RELEASED: (SETTLEABLE_LEDGER_STATUSES, LedgerOp.RELEASE),
    S.REFUNDED: (SETTLEABLE_LEDGER_STATUSES, LedgerOp.REFUND),
}


def expected_ledger_statuses(escrow: Escrow) -> FrozenSet[str]:
    expected = EXPECTED_LEDGER_STATUSES[escrow.status]
    if escrow.ledger_pending:
        return expected
    return expected | LAGGING_LEDGER_STATUSES.get(escrow.status, frozenset())


@dataclass
class Divergence:
    escrow_id: str
    ledger_escrow_id: int
    stored_status: str
    ledger_status: str
    healed: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            'escrowId': self.escrow_id,
            'ledgerEscrowId': self.ledger_escrow_id,
            'storedStatus': self.stored_status,
            'ledgerStatus': self.ledger_status,
            'healed': self.healed,
        }


@dataclass
class ReconciliationReport:
    checked_at: datetime
    checked: int = 0
    consistent: int = 0
    failed: int = 0
    divergences: List[Divergence] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'checkedAt': isoformat(self.checked_at),
            'checked': self.checked,
            'consistent': self.consistent,
            'failed': self.failed,
            'divergences': [d.to_dict() for d in self.divergences],
        }


class ReconciliationService:
    """Periodic ledger/record comparison; alerting via the divergence log."""

    def __init__(self, store: EscrowStore, gateway: LedgerGateway, heal: bool = True,
                 batch_size: int = 100, clock=utcnow):
        self.store = store
        self.gateway = gateway
        self.heal = heal
        self.batch_size = batch_size
        self.clock = clock
        self.logger = LoggerFactory.get_scheduler_logger()
        self.last_report: Optional[ReconciliationReport] = None

    async def _heal(self, escrow: Escrow, ledger_status: str) -> bool:
        action = HEAL_ACTIONS.get(escrow.status)
        if action is None or ledger_status not in action[0]:
            return False

        op = action[1]
        ledger_id = escrow.ledger_escrow_id
        if op is LedgerOp.MARK_FUNDED:
            buyer = escrow.buyer_address or self.gateway.config.relayer_address
            receipt = await self.gateway.mark_funded(ledger_id, buyer)
        elif op is LedgerOp.MARK_SHIPPED:
            receipt = await self.gateway.mark_shipped(ledger_id)
        elif op is LedgerOp.RELEASE:
            receipt = await self.gateway.release(ledger_id)
        else:
            receipt = await self.gateway.refund(ledger_id)

        self.store.mark_ledger_synced(escrow.id)
        self.logger.info("Ledger call re-driven", escrow_id=escrow.id, ledger_escrow_id=ledger_id,
                         operation=op.value, tx_hash=receipt.tx_hash,
                         already_applied=receipt.already_applied)
        return True

    async def check(self, escrow: Escrow, report: ReconciliationReport) -> None:
        ledger_status = await self.gateway.get_status(escrow.ledger_escrow_id)
        report.checked += 1

        if ledger_status in expected_ledger_statuses(escrow):
            report.consistent += 1
            if escrow.ledger_pending:
                self.store.mark_ledger_synced(escrow.id)
            return

        divergence = Divergence(escrow.id, escrow.ledger_escrow_id, escrow.status.value, ledger_status)
        self.logger.log_divergence(escrow.id, escrow.ledger_escrow_id, escrow.status.value, ledger_status)
        if self.heal:
            try:
                divergence.healed = await self._heal(escrow, ledger_status)
            except ChainCallError as e:
                self.logger.warning("Ledger heal failed", escrow_id=escrow.id, error=e.reason)

        self.store.db.record_audit_event(
            'ledger_divergence', 'escrow', escrow.id, 'system',
            old_values={'status': escrow.status.value},
            new_values={'ledger_status': ledger_status, 'healed': divergence.healed},
            correlation_id=get_correlation_id())
        report.divergences.append(divergence)

    async def run(self, now: Optional[datetime] = None) -> ReconciliationReport:
        report = ReconciliationReport(checked_at=now or self.clock())
        start_time = time.time()

        for escrow in self.store.list_for_reconciliation(limit=self.batch_size):
            try:
                await self.check(escrow, report)
            except ChainCallError as e:
                report.failed += 1
                self.logger.warning("Ledger status query failed", escrow_id=escrow.id,
                                    ledger_escrow_id=escrow.ledger_escrow_id, error=e.reason)

        self.logger.info("Reconciliation completed", checked=report.checked,
                         consistent=report.consistent, divergences=len(report.divergences),
                         failed=report.failed, duration_ms=(time.time() - start_time) * 1000)
        self.last_report = report
        return report
