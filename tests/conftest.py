"""Shared fixtures: temp SQLite config, fake clock, in-memory settlement contract.

FakeLedgerClient implements the transport protocol LedgerGateway expects and
behaves like the deployed contract for the calls the coordinator makes,
including "already ..." reverts for repeated settlement.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import pytest
from eth_abi import encode

from vouch.config.production import ProductionConfig
from vouch.core.models import EscrowDraft
from vouch.database.escrow_store import EscrowStore
from vouch.database.production_db import ProductionDatabase
from vouch.integrations.ledger_events import ESCROW_CREATED
from vouch.integrations.ledger_gateway import LedgerGateway
from vouch.integrations.ledger_rpc import LedgerRpcError
from vouch.services.coordinator import ReconciliationCoordinator
from vouch.utils.production_logger import LoggerFactory

SELLER = '0x' + '11' * 20
BUYER = '0x' + '22' * 20
STRANGER = '0x' + '33' * 20
RELAYER = '0x' + '44' * 20
CONTRACT = '0x' + '55' * 20
USDC = '0x' + 'aa' * 20
IDRX = '0x' + 'bb' * 20
ADMIN_TOKEN = 'admin-secret-token'

START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for utcnow."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _topic(value: int) -> str:
    return '0x' + format(value, '064x')


def _address_topic(address: str) -> str:
    return '0x' + '00' * 12 + address.lower()[2:]


class FakeLedgerClient:
    """In-memory settlement contract behind the LedgerClient protocol."""

    def __init__(self):
        self.escrows: Dict[int, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.one_shot_failures: Dict[str, Exception] = {}
        self.unconfirmed: set = set()
        self.emit_created_event = True
        self.confirm = True
        self.delay = 0.0
        self._next_id = 1
        self._tx_counter = 0

    # Test controls

    def fail(self, function: str, error: Optional[Exception] = None, once: bool = False):
        error = error or LedgerRpcError('insufficient funds for gas * price + value')
        (self.one_shot_failures if once else self.failures)[function] = error

    def heal(self, function: str):
        self.failures.pop(function, None)

    def count(self, function: str) -> int:
        return self.calls.count(function)

    def set_status(self, escrow_id: int, status: str):
        self.escrows[escrow_id]['status'] = status

    # Protocol

    async def submit_transaction(self, signature: str, arg_types: Sequence[str],
                                 args: Sequence[Any]) -> str:
        function = signature.split('(')[0]
        self.calls.append(function)
        if self.delay:
            await asyncio.sleep(self.delay)
        if function in self.one_shot_failures:
            raise self.one_shot_failures.pop(function)
        if function in self.failures:
            raise self.failures[function]

        logs = getattr(self, f'_{function}')(*args)
        self._tx_counter += 1
        tx_hash = _topic(self._tx_counter)
        self.receipts[tx_hash] = {'transactionHash': tx_hash, 'status': '0x1', 'logs': logs}
        if not self.confirm:
            self.unconfirmed.add(tx_hash)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        if tx_hash in self.unconfirmed:
            raise asyncio.TimeoutError(f"transaction {tx_hash} not mined")
        return self.receipts[tx_hash]

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        if tx_hash in self.unconfirmed:
            return None
        return self.receipts.get(tx_hash)

    async def call(self, signature: str, arg_types: Sequence[str], args: Sequence[Any],
                   return_types: Sequence[str]) -> tuple:
        function = signature.split('(')[0]
        self.calls.append(function)
        if function in self.failures:
            raise self.failures[function]
        escrow = self.escrows[int(args[0])]
        if function == 'getEscrowStatus':
            return (escrow['status'],)
        return (escrow['seller'], escrow['buyer'], escrow['token'], escrow['amount'],
                escrow['release_time'], escrow['status'] in ('FUNDED', 'SHIPPED'),
                escrow['status'] == 'RELEASED', escrow['status'] == 'REFUNDED')

    # Contract behaviour

    def _createEscrow(self, seller, token, amount, release_time):
        escrow_id = self._next_id
        self._next_id += 1
        self.escrows[escrow_id] = {
            'seller': seller, 'token': token, 'amount': amount, 'release_time': release_time,
            'buyer': '0x' + '00' * 20, 'status': 'CREATED',
        }
        if not self.emit_created_event:
            return []
        return [{
            'address': CONTRACT,
            'topics': ['0x' + ESCROW_CREATED.topic.hex(), _topic(escrow_id), _address_topic(seller)],
            'data': '0x' + encode(['uint256', 'uint256'], [amount, release_time]).hex(),
            'logIndex': '0x0',
        }]

    def _transition(self, escrow_id, allowed, target, already_message):
        escrow = self.escrows[int(escrow_id)]
        if escrow['status'] == target:
            raise LedgerRpcError(f'execution reverted: {already_message}')
        if escrow['status'] not in allowed:
            raise LedgerRpcError(f"execution reverted: invalid state {escrow['status']}")
        escrow['status'] = target
        return []

    def _markFunded(self, escrow_id, buyer):
        logs = self._transition(escrow_id, ('CREATED',), 'FUNDED', 'Escrow already funded')
        self.escrows[int(escrow_id)]['buyer'] = buyer
        return logs

    def _markShipped(self, escrow_id):
        return self._transition(escrow_id, ('FUNDED',), 'SHIPPED', 'Escrow already shipped')

    def _releaseFunds(self, escrow_id):
        return self._transition(escrow_id, ('FUNDED', 'SHIPPED', 'DISPUTED'), 'RELEASED',
                                'Escrow already released')

    def _refund(self, escrow_id):
        return self._transition(escrow_id, ('FUNDED', 'SHIPPED', 'DISPUTED'), 'REFUNDED',
                                'Escrow already refunded')


@pytest.fixture
def config(tmp_path, monkeypatch) -> ProductionConfig:
    env = {
        'USE_SQLITE': 'true',
        'SQLITE_PATH': str(tmp_path / 'vouch_test.db'),
        'LEDGER_ENABLED': 'true',
        'VOUCH_ESCROW_ADDRESS': CONTRACT,
        'LEDGER_RELAYER_ADDRESS': RELAYER,
        'SETTLEMENT_TOKENS': (
            '{"USDC": {"address": "%s", "decimals": 6}, '
            '"IDRX": {"address": "%s", "decimals": 18}}' % (USDC, IDRX)),
        'ADMIN_TOKENS': '["%s"]' % ADMIN_TOKEN,
        'API_SECRET_KEY': 'x' * 64,
        'ENABLE_RATE_LIMITING': 'false',
        'XENDIT_SECRET_KEY': '',
        'LOG_LEVEL': 'WARNING',
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    config = ProductionConfig()
    LoggerFactory.set_config(config)
    yield config
    LoggerFactory.set_config(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(config):
    database = ProductionDatabase(config)
    yield database
    database.close()


@pytest.fixture
def store(db, config, clock) -> EscrowStore:
    return EscrowStore(db, config.timeouts, clock=clock)


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def gateway(ledger, config) -> LedgerGateway:
    return LedgerGateway(ledger, config.ledger)


@pytest.fixture
def coordinator(store, gateway, config, clock) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(store, gateway, config, clock=clock)


@pytest.fixture
def offchain_coordinator(store, config, clock) -> ReconciliationCoordinator:
    """Coordinator with no ledger at all."""
    return ReconciliationCoordinator(store, None, config, clock=clock)


@pytest.fixture
def make_draft():
    def _make(**overrides) -> EscrowDraft:
        fields = dict(
            seller_address=SELLER,
            item_name='Vintage camera',
            fiat_amount=Decimal('1600000'),
            release_duration_seconds=86400,
            settlement_token='USDC',
            item_description='Working, with lens cap',
        )
        fields.update(overrides)
        return EscrowDraft(**fields)
    return _make
