#!/usr/bin/env python3
"""
💳 Fiat Payment Service
Bridges Xendit invoices and webhooks to the coordinator's funding transition
"""

import asyncio
import functools
from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from ..core.models import EscrowStatus, FundingSource
from ..integrations.fiat_provider import PAID_STATUSES, XenditClient
from ..utils.production_logger import LoggerFactory
from .coordinator import ReconciliationCoordinator

PAYABLE_STATUSES = frozenset({EscrowStatus.CREATED, EscrowStatus.WAITING_PAYMENT})
UNPAID_TERMINAL_STATUSES = frozenset({EscrowStatus.CANCELLED, EscrowStatus.EXPIRED})


class PaymentService:
    """Invoice creation, webhook handling and manual status checks."""

    def __init__(self, coordinator: ReconciliationCoordinator, client: XenditClient, config):
        self.coordinator = coordinator
        self.client = client
        self.config = config
        self.logger = LoggerFactory.get_payment_logger()
        self.security_logger = LoggerFactory.get_security_logger()

    async def _run(self, func, *args, **kwargs):
        """Run a blocking provider call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _process_payment_success(self, escrow_id: str, invoice_id: Optional[str]) -> Dict[str, Any]:
        result = await self.coordinator.mark_funded(escrow_id, FundingSource.FIAT)
        self.logger.info("Fiat payment processed", escrow_id=escrow_id, invoice_id=invoice_id,
                         processed=result.changed, ledger_pending=result.ledger_pending)
        response = {'processed': result.changed, 'status': result.escrow.status.value}
        if result.changed:
            response['buyerToken'] = result.extras.get('buyer_token')
        else:
            response['reason'] = 'already_processed'
        return response

    async def create_invoice(self, escrow_id: str, payer_email: Optional[str] = None) -> Dict[str, Any]:
        escrow = self.coordinator.get_by_id(escrow_id)
        if escrow.status not in PAYABLE_STATUSES:
            raise ValidationError(f"escrow {escrow_id} is {escrow.status.value}",
                                  public_message="Escrow is not awaiting payment")
        if escrow.fiat_invoice_id and escrow.fiat_invoice_url:
            return {'invoiceId': escrow.fiat_invoice_id, 'invoiceUrl': escrow.fiat_invoice_url}

        frontend = self.config.fiat.frontend_url.rstrip('/')
        invoice = await self._run(
            self.client.create_invoice,
            external_id=escrow.id,
            amount=escrow.fiat_amount,
            description=f"Vouch Escrow: {escrow.item_name}",
            payer_email=payer_email,
            success_redirect_url=f"{frontend}/pay/{escrow.id}?status=success",
            failure_redirect_url=f"{frontend}/pay/{escrow.id}?status=failed",
        )
        self.coordinator.store.attach_invoice(escrow.id, invoice['id'], invoice['invoice_url'])
        return {'invoiceId': invoice['id'], 'invoiceUrl': invoice['invoice_url']}

    async def handle_callback(self, payload: Mapping[str, Any], callback_token: Optional[str]) -> Dict[str, Any]:
        """Webhook entry point; only PAID/SETTLED notifications fund the escrow."""
        if not self.client.verify_callback(callback_token):
            self.security_logger.log_security_event("invalid_payment_callback", "high",
                                                    {'invoice_id': payload.get('id')})
            raise UnauthorizedError("invalid callback token", public_message="Invalid callback token")

        escrow_id = payload.get('external_id')
        status = str(payload.get('status') or '').upper()
        invoice_id = payload.get('id')
        self.logger.info("Xendit callback received", invoice_id=invoice_id, status=status,
                         escrow_id=escrow_id)
        if not escrow_id:
            raise ValidationError("callback without external_id", public_message="Missing external_id")
        if status not in PAID_STATUSES:
            return {'received': True, 'processed': False}

        result = await self._process_payment_success(escrow_id, invoice_id)
        return {'received': True, **result}

    async def check_status(self, escrow_id: str) -> Dict[str, Any]:
        """Manual fallback when the webhook never arrived."""
        escrow = self.coordinator.get_by_id(escrow_id)
        if escrow.status not in PAYABLE_STATUSES:
            # Already paid, or closed without payment.
            return {'success': escrow.status not in UNPAID_TERMINAL_STATUSES,
                    'status': escrow.status.value}
        if not escrow.fiat_invoice_id:
            raise ValidationError(f"escrow {escrow_id} has no invoice", public_message="No invoice created yet")

        invoice = await self._run(self.client.get_invoice, escrow.fiat_invoice_id)
        invoice_status = str(invoice.get('status') or '').upper()
        if invoice_status not in PAID_STATUSES:
            return {'success': False, 'status': invoice_status}

        result = await self._process_payment_success(escrow_id, escrow.fiat_invoice_id)
        return {'success': True, **result}

    async def simulate(self, escrow_id: str) -> Dict[str, Any]:
        """Mock-mode only: pretend the invoice was paid."""
        if not self.client.is_mock_mode:
            raise ValidationError("simulation requested outside mock mode",
                                  public_message="Simulation only available in mock mode")
        escrow = self.coordinator.get_by_id(escrow_id)
        if escrow.fiat_invoice_id:
            if self.client.simulate_payment_success(escrow.fiat_invoice_id) is None:
                raise NotFoundError(f"mock invoice {escrow.fiat_invoice_id} not found",
                                    public_message="Invoice not found")
        result = await self._process_payment_success(escrow_id, escrow.fiat_invoice_id)
        return {'success': True, 'escrowId': escrow_id, **result}
