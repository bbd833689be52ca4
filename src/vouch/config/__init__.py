from .production import (
    APIConfig,
    DatabaseConfig,
    EscrowTimeouts,
    FiatConfig,
    LedgerConfig,
    LoggingConfig,
    ProductionConfig,
    SchedulerConfig,
    SecurityConfig,
    get_config,
    reload_config,
)

__all__ = [
    'APIConfig',
    'DatabaseConfig',
    'EscrowTimeouts',
    'FiatConfig',
    'LedgerConfig',
    'LoggingConfig',
    'ProductionConfig',
    'SchedulerConfig',
    'SecurityConfig',
    'get_config',
    'reload_config',
]
