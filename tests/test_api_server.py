import pytest

from vouch.api.production_server import create_production_server, status_code_for
from vouch.core.exceptions import ChainCallError, StaleStateError, ValidationError
from vouch.integrations.fiat_provider import XenditClient
from vouch.services.payments import PaymentService
from vouch.services.reconciliation import ReconciliationService
from vouch.services.scheduler import TimeoutScheduler

from conftest import ADMIN_TOKEN, BUYER, SELLER, STRANGER


@pytest.fixture
def server(config, coordinator, store, gateway, clock):
    reconciliation = ReconciliationService(store, gateway, clock=clock)
    payments = PaymentService(coordinator, XenditClient(config.fiat), config)
    scheduler = TimeoutScheduler(coordinator, config, reconciliation, clock=clock)
    return create_production_server(config, coordinator, payments, reconciliation, scheduler)


@pytest.fixture
def client(server):
    server.app.config['TESTING'] = True
    return server.app.test_client()


def _create(client, **overrides):
    body = {'sellerAddress': SELLER, 'itemName': 'Vintage camera',
            'amountIdr': 1600000, 'releaseDuration': 86400}
    body.update(overrides)
    response = client.post('/api/escrow/create', json=body)
    assert response.status_code == 201, response.get_json()
    return response.get_json()['escrow']


def _funded(client):
    escrow = _create(client)
    paid = client.post(f"/api/payment/simulate/{escrow['id']}").get_json()
    return escrow['id'], paid['buyerToken']


def _shipped(client):
    escrow_id, token = _funded(client)
    response = client.post(f'/api/escrow/{escrow_id}/ship',
                           json={'sellerAddress': SELLER, 'proof': 'trk123'})
    assert response.status_code == 200
    return escrow_id, token


def test_error_status_mapping():
    assert status_code_for(ValidationError()) == 400
    assert status_code_for(StaleStateError('e', 'FUNDED', 'SHIPPED')) == 409
    assert status_code_for(ChainCallError('release', 1, 'boom')) == 502


def test_factory_requires_coordinator(config):
    with pytest.raises(ValueError):
        create_production_server(config)


def test_health(client):
    _create(client)
    response = client.get('/api/health', headers={'X-Correlation-ID': 'abc-123'})
    body = response.get_json()
    assert response.status_code == 200
    assert response.headers['X-Correlation-ID'] == 'abc-123'
    assert body['database']['db_status'] == 'healthy'
    assert body['ledger'] == {'enabled': True, 'circuit_breaker_open': False}
    assert body['payments']['mock_mode'] is True
    assert body['escrows'] == {'WAITING_PAYMENT': 1}


def test_create_and_fetch(client, config):
    response = client.post('/api/escrow/create', json={
        'sellerAddress': SELLER, 'itemName': 'Vintage camera', 'amountIdr': '1600000',
        'releaseDuration': 86400, 'itemDescription': 'Boxed'})
    body = response.get_json()
    assert response.status_code == 201
    escrow = body['escrow']
    assert escrow['status'] == 'WAITING_PAYMENT'
    assert escrow['settlementAmount'] == '100.00'
    assert escrow['ledgerEscrowId'] == 1
    assert body['paymentLink'] == f"{config.fiat.frontend_url}/pay/{escrow['id']}"
    assert 'buyerToken' not in escrow

    fetched = client.get(f"/api/escrow/{escrow['id']}").get_json()
    assert fetched['escrow']['id'] == escrow['id']

    listed = client.get(f'/api/escrow/seller/{SELLER}').get_json()
    assert listed['count'] == 1


def test_create_validation(client):
    response = client.post('/api/escrow/create', json={'sellerAddress': SELLER, 'itemName': 'x'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Missing required fields: amountIdr, releaseDuration'

    response = client.post('/api/escrow/create', json={
        'sellerAddress': SELLER, 'itemName': 'x', 'amountIdr': 'lots', 'releaseDuration': 60})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid amountIdr'

    response = client.post('/api/escrow/create', data='amountIdr=5', content_type='text/plain')
    assert response.status_code == 400


def test_unknown_escrow(client):
    response = client.get('/api/escrow/does-not-exist')
    assert response.status_code == 404
    body = response.get_json()
    assert body == {'success': False, 'error': 'Escrow not found', 'retryable': False,
                    'correlation_id': body['correlation_id']}


def test_happy_path_with_idempotent_confirm(client):
    escrow_id, token = _shipped(client)

    first = client.post(f'/api/escrow/{escrow_id}/confirm', json={'buyerToken': token})
    assert first.status_code == 200
    assert first.get_json()['changed'] is True
    assert first.get_json()['escrow']['status'] == 'RELEASED'

    second = client.post(f'/api/escrow/{escrow_id}/confirm', json={'buyerToken': token})
    assert second.status_code == 200
    assert second.get_json()['changed'] is False
    assert second.get_json()['message'] == 'Already applied'


def test_confirm_requires_buyer_proof(client):
    escrow_id, _ = _shipped(client)
    response = client.post(f'/api/escrow/{escrow_id}/confirm', json={})
    assert response.status_code == 400

    response = client.post(f'/api/escrow/{escrow_id}/confirm', json={'buyerAddress': BUYER})
    assert response.status_code == 403
    assert response.get_json()['error'] == 'Not authorized for this escrow'


def test_refund_after_shipping_conflicts(client):
    escrow_id, _ = _shipped(client)
    response = client.post(f'/api/escrow/{escrow_id}/refund', json={'sellerAddress': SELLER})
    assert response.status_code == 409
    assert response.get_json()['error'] == 'Action not allowed in the current escrow state'


def test_ship_by_stranger(client):
    escrow_id, _ = _funded(client)
    response = client.post(f'/api/escrow/{escrow_id}/ship',
                           json={'sellerAddress': STRANGER, 'proof': 'trk'})
    assert response.status_code == 403


def test_ledger_outage_reports_pending(client, ledger):
    escrow_id, token = _shipped(client)
    ledger.fail('releaseFunds')
    body = client.post(f'/api/escrow/{escrow_id}/confirm', json={'buyerToken': token}).get_json()
    assert body['success'] is True
    assert body['ledgerPending'] is True
    assert body['message'] == 'Action recorded, on-chain settlement pending'


def test_dispute_resolution_requires_admin(client):
    escrow_id, token = _shipped(client)
    response = client.post(f'/api/escrow/{escrow_id}/dispute',
                           json={'buyerToken': token, 'reason': 'Arrived broken'})
    assert response.get_json()['escrow']['status'] == 'DISPUTED'

    response = client.post(f'/api/escrow/{escrow_id}/resolve', json={'resolution': 'REFUNDED'})
    assert response.status_code == 403

    response = client.post(f'/api/escrow/{escrow_id}/resolve',
                           json={'resolution': 'REFUNDED', 'notes': 'Photos confirm damage'},
                           headers={'X-Admin-Token': ADMIN_TOKEN})
    assert response.status_code == 200
    assert response.get_json()['escrow']['status'] == 'REFUNDED'
    assert response.get_json()['escrow']['disputeResolution'] == 'Photos confirm damage'


def test_cancel(client):
    escrow = _create(client)
    response = client.post(f"/api/escrow/{escrow['id']}/cancel", json={'sellerAddress': SELLER})
    assert response.get_json()['escrow']['status'] == 'CANCELLED'


def test_ledger_funding_route(client, ledger):
    escrow = _create(client)
    response = client.post(f"/api/escrow/{escrow['id']}/fund", json={'buyerAddress': BUYER})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Payment not confirmed on-chain'

    ledger._markFunded(1, BUYER)
    response = client.post(f"/api/escrow/{escrow['id']}/fund", json={'buyerAddress': BUYER})
    assert response.status_code == 200
    assert response.get_json()['escrow']['status'] == 'FUNDED'


def test_invoice_and_callback(client):
    escrow = _create(client)
    invoice = client.post(f"/api/escrow/{escrow['id']}/create-invoice", json={}).get_json()
    assert invoice['invoiceId'].startswith('mock_inv_')

    callback = {'id': invoice['invoiceId'], 'external_id': escrow['id'], 'status': 'PAID'}
    first = client.post('/api/payment/xendit/callback', json=callback).get_json()
    assert first['processed'] and first['buyerToken']
    second = client.post('/api/payment/xendit/callback', json=callback).get_json()
    assert second['reason'] == 'already_processed'

    status = client.post('/api/payment/check-status', json={'escrowId': escrow['id']}).get_json()
    assert status == {'success': True, 'status': 'FUNDED'}


def test_reconciliation_report_is_admin_only(client):
    _create(client)
    assert client.get('/api/admin/reconciliation').status_code == 403

    response = client.get('/api/admin/reconciliation?run=1', headers={'X-Admin-Token': ADMIN_TOKEN})
    report = response.get_json()['report']
    assert response.status_code == 200
    assert report['checked'] == 1
    assert report['divergences'] == []


def test_api_key_auth(config, client):
    config.security.enable_api_key_auth = True
    config.security.api_keys = ['client-key']

    assert client.get('/api/health').status_code == 401
    assert client.get('/api/health', headers={'X-API-Key': 'client-key'}).status_code == 200

    # The webhook authenticates with its own token.
    response = client.post('/api/payment/xendit/callback',
                           json={'external_id': 'unknown', 'status': 'PENDING'})
    assert response.status_code == 200
