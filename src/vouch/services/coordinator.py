#!/usr/bin/env python3
"""
🔄 Reconciliation Coordinator
Single entry point for every escrow transition, human or timer triggered

``apply`` loads the record, checks the actor proof, asks the state machine,
makes the mirroring ledger call (best-effort), then commits through the record
store's compare-and-set. The scheduler goes through the same path with
``ActorProof.system()``.
"""

import hmac
import secrets
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Union

from ..core.exceptions import (
    ChainCallError,
    InvalidTransitionError,
    StaleStateError,
    UnauthorizedError,
    ValidationError,
)
from ..core.models import (
    ActorKind,
    ActorProof,
    Escrow,
    EscrowDraft,
    EscrowStatus,
    FundingSource,
    Transition,
    TransitionResult,
)
from ..core.state_machine import LedgerOp, Party, RULES, TransitionRule, decide, is_due, validate_payload
from ..database.escrow_store import EscrowStore
from ..integrations.ledger_gateway import LedgerGateway, LedgerReceipt
from ..utils.address_normalizer import addresses_equal, is_valid_address, normalize_address
from ..utils.production_logger import LoggerFactory, get_correlation_id, log_performance
from ..utils.timeutil import utcnow

# Ledger statuses that prove funds are locked in the contract.
LEDGER_FUNDED_STATUSES = frozenset({'FUNDED', 'SHIPPED', 'DISPUTED'})

TWO_PLACES = Decimal('0.01')


class ReconciliationCoordinator:
    """Validates, mirrors to the ledger, then commits escrow transitions."""

    def __init__(self, store: EscrowStore, gateway: Optional[LedgerGateway], config,
                 clock=utcnow, retry_stale: int = 3):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.timeouts = config.timeouts
        self.db = store.db
        self.clock = clock
        self.retry_stale = max(1, retry_stale)
        self.logger = LoggerFactory.get_coordinator_logger()
        self.security_logger = LoggerFactory.get_security_logger()

    # Authorization

    def is_admin(self, proof: ActorProof) -> bool:
        if proof.kind is not ActorKind.ADMIN or not proof.value:
            return False
        return any(hmac.compare_digest(proof.value, token)
                   for token in self.config.security.admin_tokens if token)

    def _authorize(self, escrow: Escrow, rule: TransitionRule, proof: ActorProof):
        party = rule.party
        if party is Party.SYSTEM:
            allowed = proof.kind is ActorKind.SYSTEM or self.is_admin(proof)
        elif party is Party.ADMIN:
            allowed = self.is_admin(proof)
        elif party is Party.SELLER:
            allowed = (proof.kind is ActorKind.ADDRESS
                       and addresses_equal(proof.value, escrow.seller_address))
        else:
            if proof.kind is ActorKind.ADDRESS:
                allowed = addresses_equal(proof.value, escrow.buyer_address)
            elif proof.kind is ActorKind.TOKEN:
                allowed = bool(proof.value and escrow.buyer_token
                               and hmac.compare_digest(proof.value, escrow.buyer_token))
            else:
                allowed = False

        if not allowed:
            self.security_logger.log_security_event(
                "unauthorized_transition", "medium",
                {'escrow_id': escrow.id, 'transition': rule.transition.value,
                 'actor': proof.describe()})
            raise UnauthorizedError(
                f"{proof.describe()} may not {rule.transition.value} escrow {escrow.id}")

    # Transition plumbing

    def _fields_for(self, transition: Transition, payload: Mapping[str, Any],
                    now: datetime) -> Dict[str, Any]:
        if transition is Transition.FUND:
            fields = {'funded_at': now}
            if payload.get('buyer_address'):
                fields['buyer_address'] = normalize_address(payload['buyer_address'])
            if payload.get('buyer_token'):
                fields['buyer_token'] = payload['buyer_token']
            return fields
        if transition is Transition.SHIP:
            return {'shipped_at': now,
                    'shipment_proof': payload['proof'].strip(),
                    'auto_release_at': now + self.timeouts.auto_release}
        if transition is Transition.CONFIRM_RECEIPT:
            return {'delivered_at': now, 'released_at': now}
        if transition in (Transition.AUTO_RELEASE, Transition.RESOLVE_RELEASE):
            fields = {'released_at': now}
        elif transition in (Transition.REFUND, Transition.AUTO_REFUND, Transition.RESOLVE_REFUND):
            fields = {'refunded_at': now}
        elif transition is Transition.RAISE_DISPUTE:
            return {'disputed_at': now, 'dispute_reason': payload['reason'].strip()}
        else:
            return {}

        if transition in (Transition.RESOLVE_RELEASE, Transition.RESOLVE_REFUND):
            fields['dispute_resolution'] = (payload.get('resolution') or '').strip() or None
        return fields

    async def _mirror_on_ledger(self, op: LedgerOp, escrow: Escrow,
                                fields: Mapping[str, Any]) -> Optional[LedgerReceipt]:
        ledger_id = escrow.ledger_escrow_id
        if op is LedgerOp.MARK_FUNDED:
            buyer = fields.get('buyer_address') or escrow.buyer_address or self.config.ledger.relayer_address
            if not buyer:
                self.logger.warning("No buyer address for ledger markFunded, skipping",
                                    escrow_id=escrow.id, ledger_escrow_id=ledger_id)
                return None
            return await self.gateway.mark_funded(ledger_id, buyer)
        if op is LedgerOp.MARK_SHIPPED:
            return await self.gateway.mark_shipped(ledger_id)
        if op is LedgerOp.RELEASE:
            return await self.gateway.release(ledger_id)
        return await self.gateway.refund(ledger_id)

    async def _verify_ledger_funding(self, escrow: Escrow):
        """Ledger-sourced funding is trusted only if the contract agrees. Blocking."""
        if self.gateway is None or escrow.ledger_escrow_id is None:
            raise ValidationError(f"escrow {escrow.id} is not registered on the ledger",
                                  public_message="Escrow is not registered on-chain")
        ledger_status = await self.gateway.get_status(escrow.ledger_escrow_id)
        if ledger_status not in LEDGER_FUNDED_STATUSES:
            raise ValidationError(
                f"ledger reports {ledger_status} for escrow {escrow.ledger_escrow_id}",
                public_message="Payment not confirmed on-chain")

    def _record_audit(self, escrow: Escrow, updated: Escrow, transition: Transition,
                      proof: ActorProof, ledger_pending: bool, tx_hash: Optional[str]):
        self.db.record_audit_event(
            'escrow_transition', 'escrow', escrow.id, proof.describe(),
            old_values={'status': escrow.status.value},
            new_values={'status': updated.status.value, 'transition': transition.value,
                        'ledger_pending': ledger_pending, 'ledger_tx_hash': tx_hash},
            correlation_id=get_correlation_id())

    @log_performance("escrow_apply")
    async def apply(self, escrow_id: str, transition: Union[Transition, str], actor_proof: ActorProof,
                    payload: Optional[Mapping[str, Any]] = None,
                    now: Optional[datetime] = None) -> TransitionResult:
        """Apply one transition. Raises a typed ``EscrowError`` on refusal."""
        transition = Transition(transition)
        payload = dict(payload or {})
        now = now or self.clock()
        rule = RULES[transition]

        escrow = self.store.get_by_id(escrow_id)
        self._authorize(escrow, rule, actor_proof)

        decision = decide(escrow.status, transition)
        if not decision.allowed:
            raise InvalidTransitionError(escrow.id, transition.value, escrow.status.value)

        if decision.idempotent:
            self.logger.log_transition(escrow.id, transition.value, escrow.status.value,
                                       escrow.status.value, actor_proof.describe(), changed=False)
            return TransitionResult(escrow, transition, changed=False,
                                    ledger_pending=escrow.ledger_pending)

        validate_payload(rule, payload)
        if rule.scheduler_only and not is_due(escrow, transition, now, self.timeouts):
            raise InvalidTransitionError(escrow.id, transition.value, escrow.status.value)

        if transition is Transition.OPEN_PAYMENT and escrow.ledger_escrow_id is None:
            raise ValidationError(f"escrow {escrow.id} has no ledger id yet",
                                  public_message="Escrow is not registered on-chain")

        source = FundingSource(payload.get('source', FundingSource.FIAT))
        if transition is Transition.FUND and payload.get('buyer_address') \
                and not is_valid_address(payload['buyer_address']):
            raise ValidationError("invalid buyer address", public_message="Invalid buyer address")
        if transition is Transition.FUND and source is FundingSource.LEDGER:
            await self._verify_ledger_funding(escrow)

        fields = self._fields_for(transition, payload, now)
        ledger_pending = False
        tx_hash = None

        op = decision.ledger_op
        # Ledger-sourced funding is already reflected on-chain.
        if op is LedgerOp.MARK_FUNDED and source is FundingSource.LEDGER:
            op = None

        if op is not None and self.gateway is not None and escrow.ledger_escrow_id is not None:
            try:
                receipt = await self._mirror_on_ledger(op, escrow, fields)
                tx_hash = receipt.tx_hash if receipt else None
            except ChainCallError as e:
                self.logger.warning("Ledger call failed, committing with settlement pending",
                                    escrow_id=escrow.id, transition=transition.value,
                                    operation=e.operation, error=e.reason)
                ledger_pending = True
                fields['ledger_pending'] = True

        updated = self.store.update_status(escrow.id, escrow.status, rule.target, fields)

        self._record_audit(escrow, updated, transition, actor_proof, ledger_pending, tx_hash)
        self.logger.log_transition(escrow.id, transition.value, escrow.status.value,
                                   updated.status.value, actor_proof.describe(), changed=True)
        return TransitionResult(updated, transition, changed=True,
                                ledger_pending=ledger_pending, ledger_tx_hash=tx_hash)

    async def _apply_with_retry(self, escrow_id: str, transition: Transition, actor_proof: ActorProof,
                                payload: Optional[Mapping[str, Any]] = None) -> TransitionResult:
        """Lost compare-and-set races are retried against the reloaded record."""
        for attempt in range(self.retry_stale):
            try:
                return await self.apply(escrow_id, transition, actor_proof, payload)
            except StaleStateError as e:
                if attempt == self.retry_stale - 1:
                    raise
                self.logger.info("Stale escrow state, retrying", escrow_id=escrow_id,
                                 transition=transition.value, expected=e.expected,
                                 actual=e.actual, attempt=attempt + 1)

    # Creation and queries

    def settlement_amount_for(self, draft: EscrowDraft) -> Decimal:
        """Fiat amount converted to the settlement token, unless given explicitly."""
        if draft.settlement_amount is not None:
            amount = Decimal(str(draft.settlement_amount))
        elif draft.settlement_token == 'IDRX':
            amount = Decimal(str(draft.fiat_amount))
        elif draft.settlement_token == 'USDC':
            amount = (Decimal(str(draft.fiat_amount)) / Decimal(self.config.fiat.idr_per_usdc)) \
                .quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        else:
            raise ValidationError(f"no conversion rule for {draft.settlement_token}",
                                  public_message="Unsupported settlement token")
        if amount <= 0:
            raise ValidationError("settlement amount must be positive",
                                  public_message="Amount too small")
        return amount

    def _validate_draft(self, draft: EscrowDraft) -> EscrowDraft:
        security = self.config.security
        if not is_valid_address(draft.seller_address):
            raise ValidationError("invalid seller address", public_message="Invalid seller address")
        item_name = (draft.item_name or '').strip()
        if not item_name or len(item_name) > security.max_text_length:
            raise ValidationError("item name missing or too long", public_message="Invalid item name")
        if draft.item_description and len(draft.item_description) > security.max_text_length:
            raise ValidationError("item description too long", public_message="Invalid item description")
        try:
            fiat_amount = Decimal(str(draft.fiat_amount))
        except InvalidOperation:
            raise ValidationError("fiat amount is not a number", public_message="Invalid amount")
        if not fiat_amount.is_finite() or fiat_amount <= 0:
            raise ValidationError("fiat amount must be positive", public_message="Invalid amount")
        if int(draft.release_duration_seconds) <= 0:
            raise ValidationError("release duration must be positive",
                                  public_message="Invalid release duration")

        token = (draft.settlement_token or '').upper()
        if self.config.ledger.token(token) is None:
            raise ValidationError(f"unknown settlement token {token}",
                                  public_message="Unsupported settlement token")

        draft.seller_address = normalize_address(draft.seller_address)
        draft.item_name = item_name
        draft.fiat_amount = fiat_amount
        draft.settlement_token = token
        return draft

    async def create(self, draft: EscrowDraft) -> Escrow:
        draft = self._validate_draft(draft)
        escrow = self.store.create(draft, self.settlement_amount_for(draft))
        self.db.record_audit_event(
            'escrow_created', 'escrow', escrow.id, f"address:{escrow.seller_address}",
            new_values={'status': escrow.status.value, 'settlement_amount': escrow.settlement_amount,
                        'settlement_token': escrow.settlement_token},
            correlation_id=get_correlation_id())

        if self.gateway is not None and self.config.ledger.enabled:
            escrow = await self.register_on_ledger(escrow.id)
        return escrow

    def get_by_id(self, escrow_id: str) -> Escrow:
        return self.store.get_by_id(escrow_id)

    def list_by_seller(self, seller_address: str) -> List[Escrow]:
        if not is_valid_address(seller_address):
            raise ValidationError("invalid seller address", public_message="Invalid seller address")
        return self.store.list_by_seller(seller_address)

    # Ledger registration

    async def register_on_ledger(self, escrow_id: str) -> Escrow:
        """Create the escrow on-chain (best-effort) and open it for payment once the id is known."""
        escrow = self.store.get_by_id(escrow_id)
        if escrow.ledger_escrow_id is not None or self.gateway is None:
            return escrow
        if escrow.ledger_tx_hash:
            # A creation tx is already out; never send a second one.
            await self.backfill_ledger_id(escrow_id)
            return self.store.get_by_id(escrow_id)

        try:
            receipt = await self.gateway.create(escrow.seller_address, escrow.settlement_token,
                                                Decimal(escrow.settlement_amount),
                                                escrow.release_time_unix)
        except ChainCallError as e:
            if e.tx_hash:
                self.store.record_ledger_tx(escrow.id, e.tx_hash)
            self.logger.warning("Ledger registration failed", escrow_id=escrow.id,
                                error=e.reason, tx_hash=e.tx_hash)
            return self.store.get_by_id(escrow_id)
        except ValidationError as e:
            self.logger.error("Ledger registration not possible", escrow_id=escrow.id, error=str(e))
            return escrow

        if receipt.tx_hash:
            self.store.record_ledger_tx(escrow.id, receipt.tx_hash)
        if receipt.escrow_id is None:
            self.logger.warning("EscrowCreated event not found, ledger id will be backfilled",
                                escrow_id=escrow.id, tx_hash=receipt.tx_hash)
            return self.store.get_by_id(escrow_id)

        await self._attach_and_open(escrow.id, receipt.escrow_id)
        return self.store.get_by_id(escrow_id)

    async def _attach_and_open(self, escrow_id: str, ledger_escrow_id: int) -> bool:
        attached = self.store.attach_ledger_id(escrow_id, ledger_escrow_id)
        if not attached:
            return False
        self.db.record_audit_event('ledger_id_attached', 'escrow', escrow_id, 'system',
                                   new_values={'ledger_escrow_id': ledger_escrow_id},
                                   correlation_id=get_correlation_id())
        self.logger.info("Ledger escrow id attached", escrow_id=escrow_id,
                         ledger_escrow_id=ledger_escrow_id)

        escrow = self.store.get_by_id(escrow_id)
        if escrow.status is EscrowStatus.CREATED:
            try:
                await self.apply(escrow_id, Transition.OPEN_PAYMENT, ActorProof.system())
            except StaleStateError:
                # Funded (or cancelled) in the meantime; nothing to open.
                self.logger.info("Escrow moved on before payment opened", escrow_id=escrow_id)
        return True

    async def backfill_ledger_id(self, escrow_id: str) -> bool:
        """Recover a missing ledger id from the stored creation tx. True when attached."""
        escrow = self.store.get_by_id(escrow_id)
        if escrow.ledger_escrow_id is not None or not escrow.ledger_tx_hash or self.gateway is None:
            return False
        ledger_escrow_id = await self.gateway.recover_escrow_id(escrow.ledger_tx_hash)
        if ledger_escrow_id is None:
            return False
        return await self._attach_and_open(escrow_id, ledger_escrow_id)

    # Actor-facing operations

    async def mark_funded(self, escrow_id: str, source: Union[FundingSource, str] = FundingSource.FIAT,
                          buyer_address: Optional[str] = None,
                          buyer_token: Optional[str] = None) -> TransitionResult:
        """
        Funding confirmation from the payment webhook or an on-chain deposit.

        Fiat buyers without a wallet get a fresh capability token. It is handed
        back in ``result.extras['buyer_token']`` only when this call funded the
        escrow; repeat notifications are no-ops.
        """
        source = FundingSource(source)
        if source is FundingSource.FIAT and not buyer_address and not buyer_token:
            buyer_token = secrets.token_hex(32)

        payload = {'source': source, 'buyer_address': buyer_address, 'buyer_token': buyer_token}
        result = await self._apply_with_retry(escrow_id, Transition.FUND, ActorProof.system(), payload)
        if result.changed and result.escrow.buyer_token:
            result.extras['buyer_token'] = result.escrow.buyer_token
        return result

    async def mark_shipped(self, escrow_id: str, seller: ActorProof, proof: str) -> TransitionResult:
        return await self._apply_with_retry(escrow_id, Transition.SHIP, seller, {'proof': proof})

    async def confirm_receipt(self, escrow_id: str, buyer: ActorProof) -> TransitionResult:
        return await self._apply_with_retry(escrow_id, Transition.CONFIRM_RECEIPT, buyer)

    async def raise_dispute(self, escrow_id: str, buyer: ActorProof, reason: str) -> TransitionResult:
        return await self._apply_with_retry(escrow_id, Transition.RAISE_DISPUTE, buyer, {'reason': reason})

    async def resolve_dispute(self, escrow_id: str, admin: ActorProof,
                              resolution: Union[EscrowStatus, str],
                              notes: Optional[str] = None) -> TransitionResult:
        try:
            outcome = EscrowStatus(str(getattr(resolution, 'value', resolution)).upper())
        except ValueError:
            outcome = None
        if outcome is EscrowStatus.RELEASED:
            transition = Transition.RESOLVE_RELEASE
        elif outcome is EscrowStatus.REFUNDED:
            transition = Transition.RESOLVE_REFUND
        else:
            raise ValidationError(f"resolution must be RELEASED or REFUNDED, got {resolution!r}",
                                  public_message="Resolution must be RELEASED or REFUNDED")
        return await self._apply_with_retry(escrow_id, transition, admin, {'resolution': notes})

    async def refund(self, escrow_id: str, seller: ActorProof) -> TransitionResult:
        return await self._apply_with_retry(escrow_id, Transition.REFUND, seller)

    async def cancel(self, escrow_id: str, seller: ActorProof) -> TransitionResult:
        return await self._apply_with_retry(escrow_id, Transition.CANCEL, seller)
