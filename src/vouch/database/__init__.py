from .escrow_store import EscrowStore
from .production_db import ProductionDatabase

__all__ = ['EscrowStore', 'ProductionDatabase']
