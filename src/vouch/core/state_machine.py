"""
Escrow lifecycle state machine.

Pure decision logic: given the current status and a requested transition it
says whether the move is allowed, whether it is an idempotent repeat, which
party must authorize it, which ledger operation mirrors it and which payload
fields it needs. Nothing here touches storage or the network.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .exceptions import ValidationError
from .models import Escrow, EscrowStatus, Transition

S = EscrowStatus


class Party(str, Enum):
    SELLER = 'SELLER'
    BUYER = 'BUYER'
    SYSTEM = 'SYSTEM'
    ADMIN = 'ADMIN'


class LedgerOp(str, Enum):
    MARK_FUNDED = 'mark_funded'
    MARK_SHIPPED = 'mark_shipped'
    RELEASE = 'release'
    REFUND = 'refund'


@dataclass(frozen=True)
class TransitionRule:
    transition: Transition
    sources: FrozenSet[EscrowStatus]
    target: EscrowStatus
    party: Party
    ledger_op: Optional[LedgerOp] = None
    # Each group needs at least one non-empty payload field.
    required: Tuple[Tuple[str, ...], ...] = ()
    # Statuses from which a repeat request is reported as already applied.
    idempotent_from: FrozenSet[EscrowStatus] = frozenset()
    scheduler_only: bool = False


def _rule(transition, sources, target, party, ledger_op=None, required=(),
          idempotent_from=None, scheduler_only=False) -> TransitionRule:
    if idempotent_from is None:
        idempotent_from = frozenset({target})
    return TransitionRule(transition, frozenset(sources), target, party, ledger_op,
                          tuple(required), frozenset(idempotent_from), scheduler_only)


RULES: Dict[Transition, TransitionRule] = {
    rule.transition: rule for rule in (
        _rule(Transition.OPEN_PAYMENT, {S.CREATED}, S.WAITING_PAYMENT, Party.SYSTEM),
        _rule(Transition.FUND, {S.CREATED, S.WAITING_PAYMENT}, S.FUNDED, Party.SYSTEM,
              ledger_op=LedgerOp.MARK_FUNDED,
              required=(('buyer_address', 'buyer_token'),),
              # Repeat payment notifications after the escrow moved on are no-ops.
              idempotent_from={S.FUNDED, S.SHIPPED, S.DISPUTED, S.RELEASED, S.REFUNDED}),
        _rule(Transition.SHIP, {S.FUNDED}, S.SHIPPED, Party.SELLER,
              ledger_op=LedgerOp.MARK_SHIPPED, required=(('proof',),)),
        _rule(Transition.CONFIRM_RECEIPT, {S.SHIPPED}, S.RELEASED, Party.BUYER,
              ledger_op=LedgerOp.RELEASE),
        _rule(Transition.AUTO_RELEASE, {S.SHIPPED}, S.RELEASED, Party.SYSTEM,
              ledger_op=LedgerOp.RELEASE, scheduler_only=True),
        _rule(Transition.REFUND, {S.FUNDED}, S.REFUNDED, Party.SELLER,
              ledger_op=LedgerOp.REFUND),
        _rule(Transition.AUTO_REFUND, {S.FUNDED}, S.REFUNDED, Party.SYSTEM,
              ledger_op=LedgerOp.REFUND, scheduler_only=True),
        _rule(Transition.RAISE_DISPUTE, {S.SHIPPED}, S.DISPUTED, Party.BUYER,
              required=(('reason',),), idempotent_from=frozenset()),
        _rule(Transition.RESOLVE_RELEASE, {S.DISPUTED}, S.RELEASED, Party.ADMIN,
              ledger_op=LedgerOp.RELEASE),
        _rule(Transition.RESOLVE_REFUND, {S.DISPUTED}, S.REFUNDED, Party.ADMIN,
              ledger_op=LedgerOp.REFUND),
        _rule(Transition.CANCEL, {S.CREATED, S.WAITING_PAYMENT}, S.CANCELLED, Party.SELLER),
        _rule(Transition.EXPIRE, {S.CREATED, S.WAITING_PAYMENT}, S.EXPIRED, Party.SYSTEM,
              scheduler_only=True),
    )
}

# Directed edges of the lifecycle graph, derived from the rules.
EDGES: Dict[EscrowStatus, FrozenSet[EscrowStatus]] = {
    status: frozenset(rule.target for rule in RULES.values() if status in rule.sources)
    for status in EscrowStatus
}


@dataclass(frozen=True)
class Decision:
    transition: Transition
    current: EscrowStatus
    allowed: bool
    idempotent: bool = False
    rule: Optional[TransitionRule] = None
    reason: Optional[str] = None

    @property
    def target(self) -> Optional[EscrowStatus]:
        return self.rule.target if self.rule else None

    @property
    def ledger_op(self) -> Optional[LedgerOp]:
        # Idempotent repeats never hit the ledger again.
        if not self.allowed or self.idempotent or self.rule is None:
            return None
        return self.rule.ledger_op


def decide(current: EscrowStatus, transition: Transition) -> Decision:
    """Decide whether ``transition`` may be applied to a record in ``current``."""
    rule = RULES[transition]
    if current in rule.sources:
        return Decision(transition, current, allowed=True, rule=rule)
    if current in rule.idempotent_from:
        return Decision(transition, current, allowed=True, idempotent=True, rule=rule)
    return Decision(transition, current, allowed=False, rule=rule,
                    reason=f"{transition.value} is not defined from {current.value}")


def validate_payload(rule: TransitionRule, payload: Mapping[str, Any]) -> None:
    for group in rule.required:
        if not any(_present(payload.get(name)) for name in group):
            raise ValidationError(
                f"{rule.transition.value} requires {' or '.join(group)}",
                public_message=f"Missing required field: {group[0]}")


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def deadline_for(escrow: Escrow, transition: Transition, timeouts) -> Optional[datetime]:
    """When an automatic transition becomes eligible, or None if it has no timer."""
    if transition is Transition.AUTO_RELEASE and escrow.shipped_at:
        return escrow.shipped_at + timeouts.auto_release
    if transition is Transition.AUTO_REFUND and escrow.funded_at:
        return escrow.funded_at + timeouts.shipping_deadline
    if transition is Transition.EXPIRE:
        return escrow.created_at + timeouts.creation_expiry
    return None


def is_due(escrow: Escrow, transition: Transition, now: datetime, timeouts) -> bool:
    deadline = deadline_for(escrow, transition, timeouts)
    return deadline is not None and now >= deadline


def allowed_transitions(current: EscrowStatus) -> List[Transition]:
    return [t for t, rule in RULES.items() if current in rule.sources]


def is_valid_path(statuses: Iterable[EscrowStatus]) -> bool:
    """True when each consecutive pair is an edge of the lifecycle graph (repeats allowed)."""
    statuses = list(statuses)
    if not statuses or statuses[0] is not EscrowStatus.CREATED:
        return False
    for previous, current in zip(statuses, statuses[1:]):
        if current is previous:
            continue
        if current not in EDGES[previous]:
            return False
    return True
