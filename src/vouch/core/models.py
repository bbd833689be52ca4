#!/usr/bin/env python3
"""
💰 Escrow domain model
Escrow record, lifecycle states, requested transitions and actor proofs
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..utils.timeutil import from_db_time, isoformat


class EscrowStatus(str, Enum):
    CREATED = 'CREATED'
    WAITING_PAYMENT = 'WAITING_PAYMENT'
    FUNDED = 'FUNDED'
    SHIPPED = 'SHIPPED'
    DISPUTED = 'DISPUTED'
    RELEASED = 'RELEASED'
    REFUNDED = 'REFUNDED'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    EscrowStatus.RELEASED,
    EscrowStatus.REFUNDED,
    EscrowStatus.CANCELLED,
    EscrowStatus.EXPIRED,
})

STATUS_LABELS = {
    EscrowStatus.CREATED: 'Waiting for payment',
    EscrowStatus.WAITING_PAYMENT: 'Waiting for payment',
    EscrowStatus.FUNDED: 'Payment secured',
    EscrowStatus.SHIPPED: 'Shipped',
    EscrowStatus.DISPUTED: 'In dispute',
    EscrowStatus.RELEASED: 'Completed',
    EscrowStatus.REFUNDED: 'Refunded',
    EscrowStatus.CANCELLED: 'Cancelled',
    EscrowStatus.EXPIRED: 'Expired',
}


class Transition(str, Enum):
    OPEN_PAYMENT = 'OPEN_PAYMENT'
    FUND = 'FUND'
    SHIP = 'SHIP'
    CONFIRM_RECEIPT = 'CONFIRM_RECEIPT'
    AUTO_RELEASE = 'AUTO_RELEASE'
    REFUND = 'REFUND'
    AUTO_REFUND = 'AUTO_REFUND'
    RAISE_DISPUTE = 'RAISE_DISPUTE'
    RESOLVE_RELEASE = 'RESOLVE_RELEASE'
    RESOLVE_REFUND = 'RESOLVE_REFUND'
    CANCEL = 'CANCEL'
    EXPIRE = 'EXPIRE'


class FundingSource(str, Enum):
    FIAT = 'FIAT'
    LEDGER = 'LEDGER'


class ActorKind(str, Enum):
    ADDRESS = 'ADDRESS'
    TOKEN = 'TOKEN'
    SYSTEM = 'SYSTEM'
    ADMIN = 'ADMIN'


@dataclass(frozen=True)
class ActorProof:
    """Who is asking: a wallet address, a buyer capability token, an operator token, or the system."""

    kind: ActorKind
    value: Optional[str] = None

    @classmethod
    def address(cls, address: str) -> 'ActorProof':
        return cls(ActorKind.ADDRESS, address)

    @classmethod
    def token(cls, token: str) -> 'ActorProof':
        return cls(ActorKind.TOKEN, token)

    @classmethod
    def admin(cls, token: str) -> 'ActorProof':
        return cls(ActorKind.ADMIN, token)

    @classmethod
    def system(cls) -> 'ActorProof':
        return cls(ActorKind.SYSTEM)

    def describe(self) -> str:
        if self.kind is ActorKind.ADDRESS:
            return f"address:{self.value}"
        return self.kind.value.lower()

    def __repr__(self) -> str:
        # Tokens are secrets; keep them out of logs and reprs.
        if self.kind in (ActorKind.TOKEN, ActorKind.ADMIN):
            return f"ActorProof(kind={self.kind.value}, value=***)"
        return f"ActorProof(kind={self.kind.value}, value={self.value!r})"


@dataclass
class EscrowDraft:
    """Seller-supplied fields for a new escrow."""

    seller_address: str
    item_name: str
    fiat_amount: Decimal
    release_duration_seconds: int
    settlement_token: str = 'USDC'
    fiat_currency: str = 'IDR'
    settlement_amount: Optional[Decimal] = None
    item_description: Optional[str] = None
    item_image: Optional[str] = None


@dataclass
class Escrow:
    id: str
    seller_address: str
    item_name: str
    settlement_token: str
    settlement_amount: str
    fiat_amount: str
    fiat_currency: str
    release_duration_seconds: int
    status: EscrowStatus
    created_at: datetime
    updated_at: datetime
    release_time_unix: Optional[int] = None
    item_description: Optional[str] = None
    item_image: Optional[str] = None
    ledger_escrow_id: Optional[int] = None
    ledger_tx_hash: Optional[str] = None
    buyer_address: Optional[str] = None
    buyer_token: Optional[str] = None
    funded_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    auto_release_at: Optional[datetime] = None
    shipment_proof: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_resolution: Optional[str] = None
    fiat_invoice_id: Optional[str] = None
    fiat_invoice_url: Optional[str] = None
    ledger_pending: bool = False

    TIME_FIELDS = (
        'created_at', 'updated_at', 'funded_at', 'shipped_at', 'delivered_at',
        'released_at', 'refunded_at', 'disputed_at', 'auto_release_at',
    )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Escrow':
        """Build from a sqlite3.Row or RealDictRow."""
        data = dict(row)
        names = {f.name for f in fields(cls)}
        values = {key: data[key] for key in names if key in data}
        for name in cls.TIME_FIELDS:
            if name in values:
                values[name] = from_db_time(values[name])
        values['status'] = EscrowStatus(values['status'])
        values['ledger_pending'] = bool(values.get('ledger_pending'))
        return cls(**values)

    def to_public_dict(self) -> Dict[str, Any]:
        """Shape exposed to API callers. Never includes the buyer capability token."""
        return {
            'id': self.id,
            'ledgerEscrowId': self.ledger_escrow_id,
            'sellerAddress': self.seller_address,
            'buyerAddress': self.buyer_address,
            'itemName': self.item_name,
            'itemDescription': self.item_description,
            'itemImage': self.item_image,
            'settlementToken': self.settlement_token,
            'settlementAmount': self.settlement_amount,
            'fiatAmount': self.fiat_amount,
            'fiatCurrency': self.fiat_currency,
            'releaseDurationSeconds': self.release_duration_seconds,
            'releaseTimeUnix': self.release_time_unix,
            'status': self.status.value,
            'statusLabel': STATUS_LABELS[self.status],
            'createdAt': isoformat(self.created_at),
            'fundedAt': isoformat(self.funded_at),
            'shippedAt': isoformat(self.shipped_at),
            'deliveredAt': isoformat(self.delivered_at),
            'releasedAt': isoformat(self.released_at),
            'refundedAt': isoformat(self.refunded_at),
            'disputedAt': isoformat(self.disputed_at),
            'autoReleaseAt': isoformat(self.auto_release_at),
            'shipmentProof': self.shipment_proof,
            'disputeReason': self.dispute_reason,
            'disputeResolution': self.dispute_resolution,
            'ledgerPending': self.ledger_pending,
            'invoiceUrl': self.fiat_invoice_url,
        }


@dataclass
class TransitionResult:
    escrow: Escrow
    transition: Transition
    changed: bool
    ledger_pending: bool = False
    ledger_tx_hash: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if not self.changed:
            return "Already applied"
        if self.ledger_pending:
            return "Action recorded, on-chain settlement pending"
        return "Action recorded"
