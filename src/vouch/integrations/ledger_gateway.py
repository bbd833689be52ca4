#!/usr/bin/env python3
"""
⛓️ Ledger Gateway
Typed operations on the settlement contract with failure classification

A ledger error that says the operation was already applied ("already released",
"already funded", ...) is a success: mutating calls are at-least-once and a retry
after a lost response must not look like a failure. Everything else (transport,
malformed response, revert, gas, timeout, open circuit breaker) surfaces as
``ChainCallError``.
"""

import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence, Tuple

import aiohttp

from ..core.exceptions import ChainCallError, ValidationError
from ..utils.address_normalizer import normalize_address
from ..utils.production_logger import LoggerFactory
from .ledger_events import find_escrow_created_id
from .ledger_rpc import LedgerRpcError

# name -> (signature, argument types, return types)
CONTRACT_FUNCTIONS: Dict[str, Tuple[str, Tuple[str, ...], Tuple[str, ...]]] = {
    'create': ('createEscrow(address,address,uint256,uint256)',
               ('address', 'address', 'uint256', 'uint256'), ()),
    'mark_funded': ('markFunded(uint256,address)', ('uint256', 'address'), ()),
    'mark_shipped': ('markShipped(uint256)', ('uint256',), ()),
    'release': ('releaseFunds(uint256)', ('uint256',), ()),
    'refund': ('refund(uint256)', ('uint256',), ()),
    'get_status': ('getEscrowStatus(uint256)', ('uint256',), ('string',)),
    'get_details': ('getEscrow(uint256)', ('uint256',),
                    ('address', 'address', 'address', 'uint256', 'uint256', 'bool', 'bool', 'bool')),
}

# Substrings of revert reasons meaning the requested effect is already in place.
ALREADY_APPLIED_MARKERS: Dict[str, Tuple[str, ...]] = {
    'mark_funded': ('already funded',),
    'mark_shipped': ('already shipped',),
    'release': ('already released', 'already completed'),
    'refund': ('already refunded', 'already cancelled', 'already canceled'),
}


class LedgerClient(Protocol):
    """Transport used by the gateway; ``JsonRpcLedgerClient`` in production."""

    async def submit_transaction(self, signature: str, arg_types: Sequence[str],
                                 args: Sequence[Any]) -> str: ...

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...

    async def call(self, signature: str, arg_types: Sequence[str], args: Sequence[Any],
                   return_types: Sequence[str]) -> tuple: ...


@dataclass
class LedgerReceipt:
    operation: str
    tx_hash: Optional[str] = None
    already_applied: bool = False
    escrow_id: Optional[int] = None


@dataclass
class LedgerEscrowDetails:
    seller: str
    buyer: str
    token: str
    amount: int
    release_time: int
    is_funded: bool
    is_released: bool
    is_cancelled: bool


def to_token_units(amount, decimals: int) -> int:
    """Decimal amount to integer base units, truncating sub-unit dust."""
    quantum = Decimal(1).scaleb(-decimals)
    return int((Decimal(str(amount)).quantize(quantum, rounding=ROUND_DOWN)).scaleb(decimals))


def is_already_applied(operation: str, message: str) -> bool:
    lowered = (message or '').lower()
    return any(marker in lowered for marker in ALREADY_APPLIED_MARKERS.get(operation, ()))


class LedgerGateway:
    """Settlement contract operations. Constructed explicitly and injected."""

    def __init__(self, client: LedgerClient, config, clock: Callable[[], float] = time.time):
        self.client = client
        self.config = config
        self.clock = clock
        self.logger = LoggerFactory.get_ledger_logger()

        # Circuit breaker for node calls
        self.circuit_breaker = {
            'failures': 0,
            'last_failure': None,
            'is_open': False
        }

    # Circuit breaker

    def _check_circuit_breaker(self) -> bool:
        """Check if circuit breaker allows requests."""
        if not self.circuit_breaker['is_open']:
            return True

        if (self.circuit_breaker['last_failure'] and
                self.clock() - self.circuit_breaker['last_failure'] > self.config.circuit_breaker_reset):
            self.circuit_breaker['is_open'] = False
            self.circuit_breaker['failures'] = 0
            self.logger.info("Circuit breaker reset")
            return True

        return False

    def _record_failure(self):
        self.circuit_breaker['failures'] += 1
        self.circuit_breaker['last_failure'] = self.clock()

        if self.circuit_breaker['failures'] >= self.config.circuit_breaker_threshold:
            if not self.circuit_breaker['is_open']:
                self.logger.warning("Circuit breaker opened due to repeated ledger failures")
            self.circuit_breaker['is_open'] = True

    def _record_success(self):
        self.circuit_breaker['failures'] = 0
        self.circuit_breaker['is_open'] = False

    @property
    def is_circuit_open(self) -> bool:
        return self.circuit_breaker['is_open']

    # Call plumbing

    async def _guarded(self, operation: str, ledger_escrow_id: Optional[int],
                       call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one node interaction; returns its value or raises ChainCallError."""
        if not self._check_circuit_breaker():
            self.logger.warning("Circuit breaker is open, skipping ledger call",
                                operation=operation, ledger_escrow_id=ledger_escrow_id)
            raise ChainCallError(operation, ledger_escrow_id, 'circuit breaker open')

        start_time = time.time()
        try:
            result = await call()
        except LedgerRpcError as e:
            if is_already_applied(operation, str(e)):
                self._record_success()
                self.logger.log_chain_call(operation, ledger_escrow_id, True,
                                           time.time() - start_time, already_applied=True)
                return LedgerReceipt(operation, already_applied=True)
            self._record_failure()
            self.logger.log_chain_call(operation, ledger_escrow_id, False,
                                       time.time() - start_time, error=str(e))
            raise ChainCallError(operation, ledger_escrow_id, str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure()
            reason = str(e) or type(e).__name__
            self.logger.log_chain_call(operation, ledger_escrow_id, False,
                                       time.time() - start_time, error=reason)
            raise ChainCallError(operation, ledger_escrow_id, reason) from e
        except Exception as e:
            # Malformed node responses (non-JSON body, undecodable return data).
            self._record_failure()
            reason = f"{type(e).__name__}: {e}"
            self.logger.log_chain_call(operation, ledger_escrow_id, False,
                                       time.time() - start_time, error=reason)
            raise ChainCallError(operation, ledger_escrow_id, reason) from e

        self._record_success()
        return result

    async def _transact(self, operation: str, ledger_escrow_id: Optional[int],
                        args: Sequence[Any]) -> LedgerReceipt:
        signature, arg_types, _ = CONTRACT_FUNCTIONS[operation]
        start_time = time.time()
        submitted: Dict[str, str] = {}

        async def call():
            submitted['tx_hash'] = await self.client.submit_transaction(signature, arg_types, args)
            return await self.client.wait_for_receipt(submitted['tx_hash'])

        try:
            result = await self._guarded(operation, ledger_escrow_id, call)
        except ChainCallError as e:
            # Submitted but outcome unknown; keep the hash so it can be looked up later.
            e.tx_hash = submitted.get('tx_hash')
            raise

        if isinstance(result, LedgerReceipt):
            return result

        receipt = LedgerReceipt(operation, tx_hash=result.get('transactionHash') or submitted.get('tx_hash'))
        if operation == 'create':
            receipt.escrow_id = find_escrow_created_id(result.get('logs') or [],
                                                       self.config.escrow_contract_address or None)
        self.logger.log_chain_call(operation, ledger_escrow_id if ledger_escrow_id is not None else receipt.escrow_id,
                                   True, time.time() - start_time, tx_hash=receipt.tx_hash)
        return receipt

    async def _read(self, operation: str, ledger_escrow_id: int) -> tuple:
        signature, arg_types, return_types = CONTRACT_FUNCTIONS[operation]
        return await self._guarded(
            operation, ledger_escrow_id,
            lambda: self.client.call(signature, arg_types, (int(ledger_escrow_id),), return_types))

    # Contract operations

    async def create(self, seller: str, token_symbol: str, amount, release_time: int) -> LedgerReceipt:
        """Register a new escrow. ``escrow_id`` on the receipt is None if the event was not found."""
        token = self.config.token(token_symbol)
        if not token or not token.get('address'):
            raise ValidationError(f"no contract address configured for token {token_symbol}",
                                  public_message="Unsupported settlement token")
        amount_units = to_token_units(amount, int(token['decimals']))
        return await self._transact('create', None, (
            normalize_address(seller), normalize_address(token['address']),
            amount_units, int(release_time)))

    async def mark_funded(self, ledger_escrow_id: int, buyer: str) -> LedgerReceipt:
        return await self._transact('mark_funded', ledger_escrow_id,
                                    (int(ledger_escrow_id), normalize_address(buyer)))

    async def mark_shipped(self, ledger_escrow_id: int) -> LedgerReceipt:
        return await self._transact('mark_shipped', ledger_escrow_id, (int(ledger_escrow_id),))

    async def release(self, ledger_escrow_id: int) -> LedgerReceipt:
        return await self._transact('release', ledger_escrow_id, (int(ledger_escrow_id),))

    async def refund(self, ledger_escrow_id: int) -> LedgerReceipt:
        return await self._transact('refund', ledger_escrow_id, (int(ledger_escrow_id),))

    async def get_status(self, ledger_escrow_id: int) -> str:
        (status,) = await self._read('get_status', ledger_escrow_id)
        return str(status).upper()

    async def get_details(self, ledger_escrow_id: int) -> LedgerEscrowDetails:
        values = await self._read('get_details', ledger_escrow_id)
        seller, buyer, token, amount, release_time, funded, released, cancelled = values
        return LedgerEscrowDetails(seller, buyer, token, int(amount), int(release_time),
                                   bool(funded), bool(released), bool(cancelled))

    async def recover_escrow_id(self, tx_hash: str) -> Optional[int]:
        """Re-read a creation receipt by hash. None if not yet mined or no event was emitted."""
        receipt = await self._guarded('get_receipt', None, lambda: self.client.get_receipt(tx_hash))
        if not receipt:
            return None
        return find_escrow_created_id(receipt.get('logs') or [],
                                      self.config.escrow_contract_address or None)
