import pytest
import requests

from vouch.core.exceptions import (
    FiatProviderError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from vouch.core.models import ActorProof, EscrowStatus as S
from vouch.integrations.fiat_provider import XenditClient
from vouch.services.payments import PaymentService

from conftest import SELLER


class FakeResponse:
    def __init__(self, status_code, body=None, text=''):
        self.status_code = status_code
        self._body = body or {}
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def xendit(config):
    return XenditClient(config.fiat)


@pytest.fixture
def payments(coordinator, xendit, config):
    return PaymentService(coordinator, xendit, config)


@pytest.fixture
def live_fiat(config):
    config.fiat.secret_key = 'xnd_development_secret'
    config.fiat.callback_token = 'callback-secret'
    return config.fiat


async def test_mock_invoice_is_reused(payments, coordinator, make_draft, config):
    escrow = await coordinator.create(make_draft())
    invoice = await payments.create_invoice(escrow.id, 'buyer@example.com')
    assert invoice['invoiceId'].startswith('mock_inv_')
    assert invoice['invoiceUrl'].startswith(f"{config.fiat.frontend_url}/mock-payment/")

    again = await payments.create_invoice(escrow.id)
    assert again == invoice
    assert coordinator.get_by_id(escrow.id).fiat_invoice_url == invoice['invoiceUrl']


async def test_invoice_only_while_awaiting_payment(payments, coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    await coordinator.cancel(escrow.id, ActorProof.address(SELLER))
    with pytest.raises(ValidationError):
        await payments.create_invoice(escrow.id)


async def test_paid_callback_funds_once(payments, coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    payload = {'id': 'inv_1', 'external_id': escrow.id, 'status': 'PAID'}

    first = await payments.handle_callback(payload, None)
    assert first['processed']
    assert first['status'] == 'FUNDED'
    assert len(first['buyerToken']) == 64

    second = await payments.handle_callback(payload, None)
    assert not second['processed']
    assert second['reason'] == 'already_processed'
    assert 'buyerToken' not in second
    assert coordinator.get_by_id(escrow.id).buyer_token == first['buyerToken']


async def test_unpaid_callback_is_ignored(payments, coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    result = await payments.handle_callback({'external_id': escrow.id, 'status': 'EXPIRED'}, None)
    assert result == {'received': True, 'processed': False}
    assert coordinator.get_by_id(escrow.id).status is S.WAITING_PAYMENT


async def test_callback_without_external_id(payments):
    with pytest.raises(ValidationError):
        await payments.handle_callback({'status': 'PAID'}, None)


async def test_callback_token_is_checked(coordinator, live_fiat, config, make_draft):
    payments = PaymentService(coordinator, XenditClient(live_fiat, session=FakeSession()), config)
    escrow = await coordinator.create(make_draft())
    with pytest.raises(UnauthorizedError):
        await payments.handle_callback({'external_id': escrow.id, 'status': 'PAID'}, 'wrong')
    result = await payments.handle_callback({'external_id': escrow.id, 'status': 'SETTLED'},
                                            'callback-secret')
    assert result['processed']


async def test_simulate_then_check_status(payments, coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    await payments.create_invoice(escrow.id)

    pending = await payments.check_status(escrow.id)
    assert pending == {'success': False, 'status': 'PENDING'}

    simulated = await payments.simulate(escrow.id)
    assert simulated['processed']
    assert coordinator.get_by_id(escrow.id).status is S.FUNDED

    checked = await payments.check_status(escrow.id)
    assert checked == {'success': True, 'status': 'FUNDED'}


async def test_check_status_paths(payments, coordinator, make_draft):
    escrow = await coordinator.create(make_draft())
    with pytest.raises(ValidationError):
        await payments.check_status(escrow.id)

    await coordinator.cancel(escrow.id, ActorProof.address(SELLER))
    assert await payments.check_status(escrow.id) == {'success': False, 'status': 'CANCELLED'}


async def test_check_status_funds_paid_invoice(payments, coordinator, make_draft, xendit):
    escrow = await coordinator.create(make_draft())
    invoice = await payments.create_invoice(escrow.id)
    xendit.simulate_payment_success(invoice['invoiceId'])

    result = await payments.check_status(escrow.id)
    assert result['success'] and result['processed']
    assert result['buyerToken']


async def test_simulate_outside_mock_mode(coordinator, live_fiat, config, make_draft):
    payments = PaymentService(coordinator, XenditClient(live_fiat, session=FakeSession()), config)
    escrow = await coordinator.create(make_draft())
    with pytest.raises(ValidationError):
        await payments.simulate(escrow.id)


def test_live_invoice_request(live_fiat):
    session = FakeSession(FakeResponse(200, {'id': 'inv_9', 'invoice_url': 'https://checkout/inv_9'}))
    client = XenditClient(live_fiat, session=session)
    invoice = client.create_invoice('escrow-1', '150000', 'Vouch Escrow: Camera',
                                    payer_email='buyer@example.com')
    assert invoice['id'] == 'inv_9'

    method, url, kwargs = session.requests[0]
    assert method == 'POST'
    assert url == 'https://api.xendit.co/v2/invoices'
    assert kwargs['auth'] == ('xnd_development_secret', '')
    assert kwargs['json']['external_id'] == 'escrow-1'
    assert kwargs['json']['amount'] == 150000.0
    assert kwargs['json']['payer_email'] == 'buyer@example.com'


def test_live_errors_are_typed(live_fiat):
    client = XenditClient(live_fiat, session=FakeSession(
        FakeResponse(404),
        FakeResponse(500, text='upstream down'),
        requests.ConnectionError('dns failure'),
    ))
    with pytest.raises(NotFoundError):
        client.get_invoice('missing')
    with pytest.raises(FiatProviderError):
        client.get_invoice('inv_1')
    with pytest.raises(FiatProviderError):
        client.get_invoice('inv_2')
