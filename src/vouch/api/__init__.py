from .production_server import EscrowAPIServer, create_production_server

__all__ = ['EscrowAPIServer', 'create_production_server']
