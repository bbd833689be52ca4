#!/usr/bin/env python3
"""
💳 Xendit Fiat Payment Client
Invoice creation and lookup against the Xendit REST API

Runs in mock mode when no secret key is configured: invoices live in memory
and ``simulate_payment_success`` flips them to PAID.
"""

import hmac
import threading
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from ..core.exceptions import FiatProviderError, NotFoundError
from ..utils.production_logger import LoggerFactory

PAID_STATUSES = frozenset({'PAID', 'SETTLED'})


class XenditClient:
    """Thin synchronous client; callers on an event loop use ``run_in_executor``."""

    def __init__(self, config, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.logger = LoggerFactory.get_payment_logger()
        self._mock_invoices: Dict[str, Dict[str, Any]] = {}
        self._mock_lock = threading.Lock()

        if self.is_mock_mode:
            self.logger.warning("Xendit running in MOCK mode - no real payments")
        else:
            self.logger.info("Xendit client initialized")

    @property
    def is_mock_mode(self) -> bool:
        return self.config.mock_mode

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.config.api_base.rstrip('/')}{path}"
        try:
            response = self.session.request(
                method, url,
                auth=(self.config.secret_key, ''),
                timeout=self.config.request_timeout,
                **kwargs
            )
        except requests.RequestException as e:
            self.logger.error("Xendit request failed", method=method, path=path, error=str(e))
            raise FiatProviderError(f"Xendit request failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Xendit resource not found: {path}", public_message="Invoice not found")
        if not response.ok:
            self.logger.error("Xendit API error", method=method, path=path,
                              status_code=response.status_code, body=response.text[:500])
            raise FiatProviderError(f"Xendit API error {response.status_code}: {response.text[:200]}")
        return response.json()

    def create_invoice(self, external_id: str, amount: Decimal, description: str,
                       payer_email: Optional[str] = None,
                       success_redirect_url: Optional[str] = None,
                       failure_redirect_url: Optional[str] = None) -> Dict[str, Any]:
        """Create a payment invoice. ``external_id`` is the escrow id."""
        if self.is_mock_mode:
            return self._create_mock_invoice(external_id, amount)

        body = {
            'external_id': external_id,
            'amount': float(amount),
            'description': description,
            'currency': self.config.currency,
            'payment_methods': self.config.payment_methods,
        }
        if payer_email:
            body['payer_email'] = payer_email
        if success_redirect_url:
            body['success_redirect_url'] = success_redirect_url
        if failure_redirect_url:
            body['failure_redirect_url'] = failure_redirect_url

        invoice = self._request('POST', '/v2/invoices', json=body)
        self.logger.info("Xendit invoice created", invoice_id=invoice.get('id'), external_id=external_id)
        return invoice

    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        if self.is_mock_mode:
            with self._mock_lock:
                invoice = self._mock_invoices.get(invoice_id)
            if invoice is None:
                raise NotFoundError(f"mock invoice {invoice_id} not found", public_message="Invoice not found")
            return dict(invoice)
        return self._request('GET', f'/v2/invoices/{invoice_id}')

    def verify_callback(self, callback_token: Optional[str]) -> bool:
        """Xendit sends the shared callback token in ``x-callback-token``."""
        if self.is_mock_mode:
            return True
        if not self.config.callback_token:
            self.logger.warning("XENDIT_CALLBACK_TOKEN not set - skipping verification")
            return True
        return hmac.compare_digest(callback_token or '', self.config.callback_token)

    # Mock mode

    def _create_mock_invoice(self, external_id: str, amount: Decimal) -> Dict[str, Any]:
        invoice_id = f"mock_inv_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        invoice = {
            'id': invoice_id,
            'external_id': external_id,
            'invoice_url': f"{self.config.frontend_url.rstrip('/')}/mock-payment/{invoice_id}",
            'status': 'PENDING',
            'amount': float(amount),
        }
        with self._mock_lock:
            self._mock_invoices[invoice_id] = invoice
        return dict(invoice)

    def simulate_payment_success(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        with self._mock_lock:
            invoice = self._mock_invoices.get(invoice_id)
            if invoice is None:
                return None
            invoice['status'] = 'PAID'
            return dict(invoice)
