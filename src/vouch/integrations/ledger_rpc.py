#!/usr/bin/env python3
"""
⛓️ JSON-RPC client for the settlement contract
Raw eth_* calls over aiohttp; signing is done by the node's managed relayer account
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_bytes

from ..utils.production_logger import LoggerFactory


class LedgerRpcError(Exception):
    """The node answered with a JSON-RPC error, or a mined transaction reverted."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.data = data
        super().__init__(message)


def encode_call(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> str:
    selector = function_signature_to_4byte_selector(signature)
    return '0x' + (selector + encode(list(arg_types), list(args))).hex()


class JsonRpcLedgerClient:
    """Ledger client speaking Ethereum JSON-RPC to a single node."""

    def __init__(self, config):
        self.config = config
        self.logger = LoggerFactory.get_ledger_logger()
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {'jsonrpc': '2.0', 'id': next(self._ids), 'method': method, 'params': params}

        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.config.rpc_url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            ) as response:
                if response.status != 200:
                    raise LedgerRpcError(f"HTTP {response.status} from ledger node")
                data = await response.json(content_type=None)

        error = data.get('error')
        if error:
            raise LedgerRpcError(error.get('message', 'unknown error'), error.get('code'), error.get('data'))
        return data.get('result')

    async def _read_rpc(self, method: str, params: List[Any]) -> Any:
        """Read-only calls are safe to retry on transport errors."""
        for attempt in range(self.config.max_retries):
            try:
                return await self._rpc(method, params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.logger.warning("Ledger RPC read failed", method=method,
                                    error=str(e) or type(e).__name__, attempt=attempt + 1)
                if attempt == self.config.max_retries - 1:
                    raise
                await asyncio.sleep(self.config.retry_delay)

    async def submit_transaction(self, signature: str, arg_types: Sequence[str],
                                 args: Sequence[Any]) -> str:
        """Send a contract transaction; returns its hash. Never retried here."""
        tx = {
            'from': self.config.relayer_address,
            'to': self.config.escrow_contract_address,
            'data': encode_call(signature, arg_types, args),
        }
        return await self._rpc('eth_sendTransaction', [tx])

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._read_rpc('eth_getTransactionReceipt', [tx_hash])

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Poll until mined. Raises asyncio.TimeoutError past the confirmation timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.confirmation_timeout

        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                if int(receipt.get('status', '0x1'), 16) == 0:
                    raise LedgerRpcError('transaction reverted', data={'txHash': tx_hash})
                return receipt
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(f"transaction {tx_hash} not mined within "
                                           f"{self.config.confirmation_timeout}s")
            await asyncio.sleep(self.config.poll_interval)

    async def call(self, signature: str, arg_types: Sequence[str], args: Sequence[Any],
                   return_types: Sequence[str]) -> tuple:
        result = await self._read_rpc('eth_call', [{
            'to': self.config.escrow_contract_address,
            'data': encode_call(signature, arg_types, args),
        }, 'latest'])
        return decode(list(return_types), to_bytes(hexstr=result))
