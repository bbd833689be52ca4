#!/usr/bin/env python3
"""
💾 Escrow Record Store
Persistence for escrow records with compare-and-set status updates

Every status change goes through ``update_status``, which only writes when the
stored status still equals the caller's expected status. Concurrent or retried
callers therefore never need a table lock: the loser gets ``StaleStateError``.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from ..core.exceptions import NotFoundError, StaleStateError
from ..core.models import Escrow, EscrowDraft, EscrowStatus, TERMINAL_STATUSES
from ..utils.production_logger import LoggerFactory
from ..utils.timeutil import to_db_time, to_unix, utcnow
from .production_db import ProductionDatabase

# Columns a transition may set. Write-once columns keep their first value.
WRITE_ONCE_FIELDS = frozenset({
    'buyer_address', 'buyer_token',
    'funded_at', 'shipped_at', 'delivered_at', 'released_at', 'refunded_at', 'disputed_at',
    'auto_release_at', 'shipment_proof', 'dispute_reason', 'dispute_resolution',
})
MUTABLE_FIELDS = frozenset({'ledger_pending'})
UPDATABLE_FIELDS = WRITE_ONCE_FIELDS | MUTABLE_FIELDS


class EscrowStore:
    """Record store over ``ProductionDatabase``."""

    def __init__(self, db: ProductionDatabase, timeouts, clock=utcnow):
        self.db = db
        self.timeouts = timeouts
        self.clock = clock
        self.logger = LoggerFactory.get_database_logger()

    def create(self, draft: EscrowDraft, settlement_amount: Decimal) -> Escrow:
        """Insert a new CREATED escrow. Release time is fixed here and never recalculated."""
        now = self.clock()
        escrow_id = uuid.uuid4().hex
        release_time = to_unix(now) + int(draft.release_duration_seconds)

        self.db.execute_query(
            """INSERT INTO escrows (
                   id, seller_address, item_name, item_description, item_image,
                   settlement_token, settlement_amount, fiat_amount, fiat_currency,
                   release_duration_seconds, release_time_unix, status,
                   created_at, updated_at, ledger_pending
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)""",
            (escrow_id, draft.seller_address, draft.item_name, draft.item_description,
             draft.item_image, draft.settlement_token, str(settlement_amount),
             str(draft.fiat_amount), draft.fiat_currency,
             int(draft.release_duration_seconds), release_time,
             EscrowStatus.CREATED.value, to_db_time(now), to_db_time(now))
        )
        self.logger.info("Escrow record created", escrow_id=escrow_id,
                         seller_address=draft.seller_address)
        return self.get_by_id(escrow_id)

    def find(self, escrow_id: str) -> Optional[Escrow]:
        row = self.db.execute_query("SELECT * FROM escrows WHERE id = ?", (escrow_id,), fetch_one=True)
        return Escrow.from_row(row) if row else None

    def get_by_id(self, escrow_id: str) -> Escrow:
        escrow = self.find(escrow_id)
        if escrow is None:
            raise NotFoundError(f"escrow {escrow_id} not found")
        return escrow

    def get_by_invoice(self, invoice_id: str) -> Optional[Escrow]:
        row = self.db.execute_query(
            "SELECT * FROM escrows WHERE fiat_invoice_id = ?", (invoice_id,), fetch_one=True)
        return Escrow.from_row(row) if row else None

    def list_by_seller(self, seller_address: str, limit: int = 200) -> List[Escrow]:
        """Seller's escrows, newest first. Addresses are compared case-insensitively."""
        rows = self.db.execute_query(
            """SELECT * FROM escrows WHERE LOWER(seller_address) = LOWER(?)
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (seller_address, limit), fetch_all=True)
        return [Escrow.from_row(row) for row in rows]

    def update_status(self, escrow_id: str, from_status: EscrowStatus, to_status: EscrowStatus,
                      extra_fields: Optional[Mapping[str, Any]] = None) -> Escrow:
        """
        Atomic compare-and-set. Applies only if the stored status still equals
        ``from_status``; otherwise raises ``StaleStateError`` (or ``NotFoundError``).
        """
        extra_fields = dict(extra_fields or {})
        unknown = set(extra_fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable by a transition: {sorted(unknown)}")

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [to_status.value, to_db_time(self.clock())]
        for name, value in extra_fields.items():
            if isinstance(value, datetime):
                value = to_db_time(value)
            elif isinstance(value, bool):
                value = int(value)
            if name in WRITE_ONCE_FIELDS:
                assignments.append(f"{name} = COALESCE({name}, ?)")
            else:
                assignments.append(f"{name} = ?")
            params.append(value)
        params.extend([escrow_id, from_status.value])

        updated = self.db.execute_query(
            f"UPDATE escrows SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            tuple(params))

        if updated == 0:
            current = self.find(escrow_id)
            if current is None:
                raise NotFoundError(f"escrow {escrow_id} not found")
            raise StaleStateError(escrow_id, from_status.value, current.status.value)

        return self.get_by_id(escrow_id)

    def attach_ledger_id(self, escrow_id: str, ledger_escrow_id: int) -> bool:
        """Set the ledger-side id once. Returns False if it was already set."""
        updated = self.db.execute_query(
            """UPDATE escrows SET ledger_escrow_id = ?, updated_at = ?
               WHERE id = ? AND ledger_escrow_id IS NULL""",
            (int(ledger_escrow_id), to_db_time(self.clock()), escrow_id))
        return updated == 1

    def record_ledger_tx(self, escrow_id: str, tx_hash: str) -> bool:
        updated = self.db.execute_query(
            """UPDATE escrows SET ledger_tx_hash = ?, updated_at = ?
               WHERE id = ? AND ledger_tx_hash IS NULL""",
            (tx_hash, to_db_time(self.clock()), escrow_id))
        return updated == 1

    def attach_invoice(self, escrow_id: str, invoice_id: str, invoice_url: str) -> Escrow:
        updated = self.db.execute_query(
            """UPDATE escrows SET fiat_invoice_id = ?, fiat_invoice_url = ?, updated_at = ?
               WHERE id = ?""",
            (invoice_id, invoice_url, to_db_time(self.clock()), escrow_id))
        if updated == 0:
            raise NotFoundError(f"escrow {escrow_id} not found")
        return self.get_by_id(escrow_id)

    def set_ledger_pending(self, escrow_id: str, pending: bool) -> None:
        self.db.execute_query(
            "UPDATE escrows SET ledger_pending = ?, updated_at = ? WHERE id = ?",
            (int(pending), to_db_time(self.clock()), escrow_id))

    def mark_ledger_synced(self, escrow_id: str) -> None:
        self.set_ledger_pending(escrow_id, False)

    # Scheduler-facing queries

    def _due(self, statuses, column: str, window: timedelta, now: datetime, limit: int) -> List[Escrow]:
        threshold = to_db_time(now - window)
        placeholders = ', '.join('?' for _ in statuses)
        rows = self.db.execute_query(
            f"""SELECT * FROM escrows
                WHERE status IN ({placeholders}) AND {column} IS NOT NULL AND {column} <= ?
                ORDER BY {column} ASC LIMIT ?""",
            tuple(s.value for s in statuses) + (threshold, limit), fetch_all=True)
        return [Escrow.from_row(row) for row in rows]

    def due_for_auto_release(self, now: datetime, limit: int = 100) -> List[Escrow]:
        """SHIPPED and now >= shipped_at + auto-release window."""
        return self._due((EscrowStatus.SHIPPED,), 'shipped_at', self.timeouts.auto_release, now, limit)

    def due_for_auto_refund(self, now: datetime, limit: int = 100) -> List[Escrow]:
        """FUNDED and now >= funded_at + shipping deadline."""
        return self._due((EscrowStatus.FUNDED,), 'funded_at', self.timeouts.shipping_deadline, now, limit)

    def due_for_expiry(self, now: datetime, limit: int = 100) -> List[Escrow]:
        """CREATED/WAITING_PAYMENT and now >= created_at + creation-expiry window."""
        return self._due((EscrowStatus.CREATED, EscrowStatus.WAITING_PAYMENT), 'created_at',
                         self.timeouts.creation_expiry, now, limit)

    def pending_ledger_backfill(self, limit: int = 100) -> List[Escrow]:
        """Records whose creation tx was sent but whose ledger id was never parsed."""
        rows = self.db.execute_query(
            """SELECT * FROM escrows
               WHERE ledger_escrow_id IS NULL AND ledger_tx_hash IS NOT NULL
               ORDER BY created_at ASC LIMIT ?""",
            (limit,), fetch_all=True)
        return [Escrow.from_row(row) for row in rows]

    def list_for_reconciliation(self, limit: int = 100) -> List[Escrow]:
        """Ledger-backed records that are still live or have settlement pending."""
        terminal = tuple(s.value for s in TERMINAL_STATUSES)
        placeholders = ', '.join('?' for _ in terminal)
        rows = self.db.execute_query(
            f"""SELECT * FROM escrows
                WHERE ledger_escrow_id IS NOT NULL
                  AND (ledger_pending = 1 OR status NOT IN ({placeholders}))
                ORDER BY ledger_pending DESC, updated_at ASC LIMIT ?""",
            terminal + (limit,), fetch_all=True)
        return [Escrow.from_row(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        rows = self.db.execute_query(
            "SELECT status, COUNT(*) AS total FROM escrows GROUP BY status", fetch_all=True)
        return {row['status']: row['total'] for row in rows}
