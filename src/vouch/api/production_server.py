#!/usr/bin/env python3
"""
🚀 Production API Server for Vouch Escrow
Escrow lifecycle and payment endpoints with correlation IDs, rate limiting and error mapping
"""

import hashlib
import hmac
import time
import traceback
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from flask import Flask, g, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from ..config.production import get_config
from ..core.exceptions import (
    ChainCallError,
    DatabaseError,
    EscrowError,
    FiatProviderError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    UnauthorizedError,
    ValidationError,
)
from ..core.models import ActorProof, EscrowDraft, FundingSource, TransitionResult
from ..services.coordinator import ReconciliationCoordinator
from ..services.payments import PaymentService
from ..services.reconciliation import ReconciliationService
from ..services.scheduler import TimeoutScheduler
from ..utils.production_logger import LoggerFactory, log_performance

ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (StaleStateError, 409),
    (ChainCallError, 502),
    (FiatProviderError, 502),
)


def status_code_for(error: EscrowError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


class EscrowAPIServer:
    """HTTP surface over the coordinator and payment service."""

    def __init__(self, config, coordinator: ReconciliationCoordinator,
                 payments: Optional[PaymentService] = None,
                 reconciliation: Optional[ReconciliationService] = None,
                 scheduler: Optional[TimeoutScheduler] = None):
        self.config = config
        self.coordinator = coordinator
        self.payments = payments
        self.reconciliation = reconciliation
        self.scheduler = scheduler
        self.db = coordinator.db
        self.app = Flask(__name__)
        self.logger = LoggerFactory.get_api_logger()
        self.security_logger = LoggerFactory.get_security_logger()
        self.limiter = None
        self._start_time = time.time()

        self._setup_app()
        self._setup_middleware()
        self._setup_routes()
        self._setup_error_handlers()

    def _setup_app(self):
        """Configure Flask application."""
        self.app.config['SECRET_KEY'] = self.config.api.secret_key
        self.app.config['MAX_CONTENT_LENGTH'] = self.config.api.max_content_length
        self.app.json.sort_keys = False

        CORS(self.app,
             origins=self.config.api.cors_origins,
             allow_headers=['Content-Type', 'Authorization', 'X-API-Key', 'X-Correlation-ID',
                            'X-Admin-Token', 'X-Callback-Token'],
             expose_headers=['X-Correlation-ID', 'X-Rate-Limit-Remaining'])

    def _setup_middleware(self):
        """Set up middleware for logging, security, and rate limiting."""
        if self.config.security.enable_rate_limiting:
            self.limiter = Limiter(
                key_func=get_remote_address,
                app=self.app,
                storage_uri=self.config.security.rate_limit_storage,
                default_limits=[self.config.api.rate_limit]
            )

        @self.app.before_request
        def before_request():
            g.correlation_id = request.headers.get('X-Correlation-ID', str(uuid.uuid4()))
            g.start_time = time.time()
            # Bind the correlation id for log lines emitted on this thread.
            g.correlation_context = self.logger.correlation_context(g.correlation_id)
            g.correlation_context.__enter__()

            self.logger.info("Incoming request",
                             method=request.method,
                             path=request.path,
                             remote_addr=request.remote_addr)

            # The payment webhook authenticates with its own callback token.
            if self.config.security.enable_api_key_auth and request.path != '/api/payment/xendit/callback':
                if not self._validate_api_key():
                    self.security_logger.log_security_event(
                        'invalid_api_key', 'medium',
                        {'ip': request.remote_addr, 'path': request.path})
                    return jsonify({'error': 'Invalid API key'}), 401

            if request.method == 'POST' and request.content_length and not request.is_json:
                return jsonify({'error': 'Content-Type must be application/json'}), 400

        @self.app.after_request
        def after_request(response):
            response.headers['X-Correlation-ID'] = g.correlation_id
            self.logger.log_api_request(
                method=request.method,
                path=request.path,
                status_code=response.status_code,
                response_time=time.time() - g.start_time
            )
            return response

        @self.app.teardown_request
        def teardown_request(error=None):
            context = g.pop('correlation_context', None)
            if context is not None:
                context.__exit__(None, None, None)

    def _validate_api_key(self) -> bool:
        """Validate API key from request headers."""
        api_key = request.headers.get('X-API-Key')
        if not api_key:
            return False

        api_key_hash = hashlib.sha256(api_key.encode()).hexdigest()
        return any(hmac.compare_digest(api_key_hash, hashlib.sha256(key.encode()).hexdigest())
                   for key in self.config.security.api_keys)

    def _setup_error_handlers(self):
        """Map domain errors and HTTP errors to JSON responses."""

        @self.app.errorhandler(EscrowError)
        def escrow_error(error: EscrowError):
            status_code = status_code_for(error)
            log = self.logger.warning if status_code < 500 else self.logger.error
            log("Request rejected", error_type=type(error).__name__,
                detail=error.detail, status_code=status_code)
            return jsonify({
                'success': False,
                'error': error.public_message,
                'retryable': error.retryable,
                'correlation_id': getattr(g, 'correlation_id', None)
            }), status_code

        @self.app.errorhandler(DatabaseError)
        def database_error(error):
            self.logger.error("Database error", error=str(error))
            return jsonify({
                'success': False,
                'error': 'Internal server error',
                'correlation_id': getattr(g, 'correlation_id', None)
            }), 500

        @self.app.errorhandler(400)
        def bad_request(error):
            return jsonify({
                'error': 'Bad request',
                'message': str(error.description),
                'correlation_id': getattr(g, 'correlation_id', None)
            }), 400

        @self.app.errorhandler(404)
        def not_found(error):
            return jsonify({
                'error': 'Not found',
                'correlation_id': getattr(g, 'correlation_id', None)
            }), 404

        @self.app.errorhandler(429)
        def rate_limit_exceeded(error):
            self.security_logger.log_security_event(
                'rate_limit_exceeded', 'low',
                {'ip': request.remote_addr, 'path': request.path})
            return jsonify({
                'error': 'Rate limit exceeded',
                'message': str(error.description),
                'correlation_id': getattr(g, 'correlation_id', None)
            }), 429

        @self.app.errorhandler(500)
        def internal_error(error):
            self.logger.error("Internal server error",
                              error=str(error),
                              traceback=traceback.format_exc())
            return jsonify({
                'error': 'Internal server error',
                'correlation_id': getattr(g, 'correlation_id', None)
            }), 500

    # Request helpers

    def _validate_request_data(self, required_fields: List[str],
                               optional_fields: List[str] = None) -> Dict[str, Any]:
        """Validate and sanitize the JSON body; raises ValidationError."""
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("body is not a JSON object", public_message="Request body must be a JSON object")

        missing_fields = [name for name in required_fields
                          if data.get(name) is None or (isinstance(data.get(name), str) and not data[name].strip())]
        if missing_fields:
            raise ValidationError(f"missing fields {missing_fields}",
                                  public_message=f"Missing required fields: {', '.join(missing_fields)}")

        validated_data = {}
        for name in required_fields + (optional_fields or []):
            if name not in data or data[name] is None:
                continue
            value = data[name]
            if isinstance(value, str):
                value = value.strip()
                limit = (self.config.security.max_address_length if name.endswith('Address')
                         else self.config.security.max_text_length)
                if len(value) > limit:
                    raise ValidationError(f"{name} too long", public_message=f"{name} is too long")
            validated_data[name] = value
        return validated_data

    def _buyer_proof(self, data: Dict[str, Any]) -> ActorProof:
        if data.get('buyerToken'):
            return ActorProof.token(data['buyerToken'])
        if data.get('buyerAddress'):
            return ActorProof.address(data['buyerAddress'])
        raise ValidationError("no buyer proof", public_message="buyerToken or buyerAddress is required")

    def _admin_proof(self) -> ActorProof:
        return ActorProof.admin(request.headers.get('X-Admin-Token', ''))

    def _require_admin(self):
        proof = self._admin_proof()
        if not self.coordinator.is_admin(proof):
            self.security_logger.log_security_event('invalid_admin_token', 'high',
                                                    {'ip': request.remote_addr, 'path': request.path})
            raise UnauthorizedError("admin token rejected", public_message="Admin token required")

    def _transition_response(self, result: TransitionResult, status_code: int = 200):
        body = {
            'success': True,
            'changed': result.changed,
            'message': result.message,
            'ledgerPending': result.ledger_pending,
            'txHash': result.ledger_tx_hash,
            'escrow': result.escrow.to_public_dict(),
            'correlation_id': g.correlation_id
        }
        return jsonify(body), status_code

    @staticmethod
    def _parse_decimal(value: Any, name: str) -> Decimal:
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"{name} is not a number", public_message=f"Invalid {name}")

    def _setup_routes(self):
        """Set up API routes."""

        @self.app.route('/api/health', methods=['GET'])
        def health_check():
            db_health = self.db.get_health_status()
            gateway = self.coordinator.gateway
            health_status = {
                'status': 'healthy',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'version': self.config.version,
                'environment': self.config.environment,
                'database': db_health,
                'ledger': {
                    'enabled': gateway is not None,
                    'circuit_breaker_open': gateway.is_circuit_open if gateway else False,
                },
                'payments': {'mock_mode': self.payments.client.is_mock_mode if self.payments else None},
                'scheduler': self.scheduler.get_status() if self.scheduler else None,
                'escrows': self.coordinator.store.count_by_status(),
                'api': {'uptime_seconds': time.time() - self._start_time},
                'correlation_id': g.correlation_id
            }
            if db_health.get('db_status') != 'healthy':
                health_status['status'] = 'degraded'
            return jsonify(health_status), 200 if health_status['status'] == 'healthy' else 503

        @self.app.route('/api/escrow/create', methods=['POST'])
        @log_performance("create_escrow")
        async def create_escrow():
            data = self._validate_request_data(
                ['sellerAddress', 'itemName', 'amountIdr', 'releaseDuration'],
                ['itemDescription', 'itemImage', 'currency', 'settlementAmount'])
            try:
                release_duration = int(data['releaseDuration'])
            except (TypeError, ValueError):
                raise ValidationError("releaseDuration is not an integer",
                                      public_message="Invalid releaseDuration")

            draft = EscrowDraft(
                seller_address=data['sellerAddress'],
                item_name=data['itemName'],
                fiat_amount=self._parse_decimal(data['amountIdr'], 'amountIdr'),
                release_duration_seconds=release_duration,
                settlement_token=str(data.get('currency') or 'USDC').upper(),
                fiat_currency=self.config.fiat.currency,
                settlement_amount=(self._parse_decimal(data['settlementAmount'], 'settlementAmount')
                                   if data.get('settlementAmount') is not None else None),
                item_description=data.get('itemDescription'),
                item_image=data.get('itemImage'),
            )
            escrow = await self.coordinator.create(draft)
            return jsonify({
                'success': True,
                'escrow': escrow.to_public_dict(),
                'paymentLink': f"{self.config.fiat.frontend_url.rstrip('/')}/pay/{escrow.id}",
                'correlation_id': g.correlation_id
            }), 201

        @self.app.route('/api/escrow/<escrow_id>', methods=['GET'])
        def get_escrow(escrow_id: str):
            escrow = self.coordinator.get_by_id(escrow_id)
            return jsonify({'success': True, 'escrow': escrow.to_public_dict(),
                            'correlation_id': g.correlation_id}), 200

        @self.app.route('/api/escrow/seller/<address>', methods=['GET'])
        def list_seller_escrows(address: str):
            escrows = self.coordinator.list_by_seller(address)
            return jsonify({'success': True,
                            'escrows': [e.to_public_dict() for e in escrows],
                            'count': len(escrows),
                            'correlation_id': g.correlation_id}), 200

        @self.app.route('/api/escrow/<escrow_id>/fund', methods=['POST'])
        async def fund_from_ledger(escrow_id: str):
            """On-chain deposit notification; trusted only once the contract confirms it."""
            data = self._validate_request_data(['buyerAddress'])
            result = await self.coordinator.mark_funded(
                escrow_id, FundingSource.LEDGER, buyer_address=data['buyerAddress'])
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/ship', methods=['POST'])
        async def ship_escrow(escrow_id: str):
            data = self._validate_request_data(['sellerAddress', 'proof'])
            result = await self.coordinator.mark_shipped(
                escrow_id, ActorProof.address(data['sellerAddress']), data['proof'])
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/confirm', methods=['POST'])
        async def confirm_escrow(escrow_id: str):
            data = self._validate_request_data([], ['buyerToken', 'buyerAddress'])
            result = await self.coordinator.confirm_receipt(escrow_id, self._buyer_proof(data))
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/dispute', methods=['POST'])
        async def dispute_escrow(escrow_id: str):
            data = self._validate_request_data(['reason'], ['buyerToken', 'buyerAddress'])
            result = await self.coordinator.raise_dispute(
                escrow_id, self._buyer_proof(data), data['reason'])
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/refund', methods=['POST'])
        async def refund_escrow(escrow_id: str):
            data = self._validate_request_data(['sellerAddress'])
            result = await self.coordinator.refund(escrow_id, ActorProof.address(data['sellerAddress']))
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/cancel', methods=['POST'])
        async def cancel_escrow(escrow_id: str):
            data = self._validate_request_data(['sellerAddress'])
            result = await self.coordinator.cancel(escrow_id, ActorProof.address(data['sellerAddress']))
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/resolve', methods=['POST'])
        async def resolve_escrow(escrow_id: str):
            data = self._validate_request_data(['resolution'], ['notes'])
            result = await self.coordinator.resolve_dispute(
                escrow_id, self._admin_proof(), data['resolution'], data.get('notes'))
            return self._transition_response(result)

        @self.app.route('/api/escrow/<escrow_id>/create-invoice', methods=['POST'])
        async def create_invoice(escrow_id: str):
            self._require_payments()
            data = self._validate_request_data([], ['payerEmail'])
            invoice = await self.payments.create_invoice(escrow_id, data.get('payerEmail'))
            return jsonify({'success': True, **invoice, 'correlation_id': g.correlation_id}), 200

        @self.app.route('/api/payment/xendit/callback', methods=['POST'])
        async def xendit_callback():
            self._require_payments()
            payload = request.get_json(silent=True) or {}
            result = await self.payments.handle_callback(payload, request.headers.get('X-Callback-Token'))
            return jsonify(result), 200

        @self.app.route('/api/payment/check-status', methods=['POST'])
        async def check_payment_status():
            self._require_payments()
            data = self._validate_request_data(['escrowId'])
            result = await self.payments.check_status(data['escrowId'])
            return jsonify(result), 200

        @self.app.route('/api/payment/simulate/<escrow_id>', methods=['POST'])
        async def simulate_payment(escrow_id: str):
            self._require_payments()
            result = await self.payments.simulate(escrow_id)
            result['message'] = 'Payment simulated successfully'
            return jsonify(result), 200

        @self.app.route('/api/admin/reconciliation', methods=['GET'])
        async def reconciliation_report():
            self._require_admin()
            if self.reconciliation is None:
                raise ValidationError("reconciliation disabled", public_message="Ledger is not configured")
            if request.args.get('run', '').lower() in ('1', 'true', 'yes'):
                report = await self.reconciliation.run()
            else:
                report = self.reconciliation.last_report
            return jsonify({'success': True,
                            'report': report.to_dict() if report else None,
                            'correlation_id': g.correlation_id}), 200

    def _require_payments(self):
        if self.payments is None:
            raise FiatProviderError("payment service not configured")

    def run(self):
        """Run the API server."""
        self._start_time = time.time()

        self.logger.info("Starting Vouch Escrow API Server",
                         host=self.config.api.host,
                         port=self.config.api.port,
                         environment=self.config.environment,
                         version=self.config.version)

        self.app.run(
            host=self.config.api.host,
            port=self.config.api.port,
            debug=self.config.api.debug,
            threaded=True
        )


def create_production_server(config=None, coordinator: ReconciliationCoordinator = None,
                             payments: Optional[PaymentService] = None,
                             reconciliation: Optional[ReconciliationService] = None,
                             scheduler: Optional[TimeoutScheduler] = None) -> EscrowAPIServer:
    """Factory function to create the API server."""
    config = config or get_config()
    if coordinator is None:
        raise ValueError("a coordinator is required")
    return EscrowAPIServer(config, coordinator, payments, reconciliation, scheduler)
