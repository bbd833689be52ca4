from .fiat_provider import XenditClient
from .ledger_gateway import LedgerEscrowDetails, LedgerGateway, LedgerReceipt
from .ledger_rpc import JsonRpcLedgerClient, LedgerRpcError

__all__ = [
    'JsonRpcLedgerClient',
    'LedgerEscrowDetails',
    'LedgerGateway',
    'LedgerReceipt',
    'LedgerRpcError',
    'XenditClient',
]
