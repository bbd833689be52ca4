#!/usr/bin/env python3
"""
🏭 Production Configuration for Vouch Escrow
Environment-driven configuration for the escrow coordinator, ledger gateway and scheduler
"""

import os
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Dict, Any, List


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, 'true' if default else 'false').lower() == 'true'


def _env_json(name: str, default: str):
    return json.loads(os.getenv(name, default))


DEFAULT_SETTLEMENT_TOKENS = json.dumps({
    'USDC': {'address': '', 'decimals': 6},
    'IDRX': {'address': '', 'decimals': 18},
})


@dataclass
class DatabaseConfig:
    """Database configuration with connection pooling."""
    host: str = field(default_factory=lambda: _env('DB_HOST', 'localhost'))
    port: int = field(default_factory=lambda: _env_int('DB_PORT', 5432))
    name: str = field(default_factory=lambda: _env('DB_NAME', 'vouch_escrow'))
    user: str = field(default_factory=lambda: _env('DB_USER', 'vouch'))
    password: str = field(default_factory=lambda: _env('DB_PASSWORD', ''))
    ssl_mode: str = field(default_factory=lambda: _env('DB_SSL_MODE', 'require'))
    max_connections: int = field(default_factory=lambda: _env_int('DB_MAX_CONNECTIONS', 20))
    connection_timeout: int = field(default_factory=lambda: _env_int('DB_CONNECTION_TIMEOUT', 30))

    # SQLite for development and single-instance deployments
    sqlite_path: str = field(default_factory=lambda: _env('SQLITE_PATH', './data/vouch_escrow.db'))
    use_sqlite: bool = field(default_factory=lambda: _env_bool('USE_SQLITE', True))


@dataclass
class LedgerConfig:
    """Settlement contract and JSON-RPC node configuration."""
    enabled: bool = field(default_factory=lambda: _env_bool('LEDGER_ENABLED', False))
    rpc_url: str = field(default_factory=lambda: _env('LEDGER_RPC_URL', 'https://rpc.sepolia-api.lisk.com'))
    escrow_contract_address: str = field(default_factory=lambda: _env('VOUCH_ESCROW_ADDRESS', ''))
    # Node-managed account that signs eth_sendTransaction calls
    relayer_address: str = field(default_factory=lambda: _env('LEDGER_RELAYER_ADDRESS', ''))
    request_timeout: int = field(default_factory=lambda: _env_int('LEDGER_REQUEST_TIMEOUT', 30))
    confirmation_timeout: int = field(default_factory=lambda: _env_int('LEDGER_CONFIRMATION_TIMEOUT', 180))
    poll_interval: float = field(default_factory=lambda: _env_float('LEDGER_POLL_INTERVAL', 2.0))
    max_retries: int = field(default_factory=lambda: _env_int('LEDGER_MAX_RETRIES', 3))
    retry_delay: float = field(default_factory=lambda: _env_float('LEDGER_RETRY_DELAY', 1.0))
    circuit_breaker_threshold: int = field(default_factory=lambda: _env_int('LEDGER_BREAKER_THRESHOLD', 3))
    circuit_breaker_reset: int = field(default_factory=lambda: _env_int('LEDGER_BREAKER_RESET', 30))
    settlement_tokens: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: _env_json('SETTLEMENT_TOKENS', DEFAULT_SETTLEMENT_TOKENS))

    def token(self, symbol: str) -> Optional[Dict[str, Any]]:
        return self.settlement_tokens.get(symbol.upper())


@dataclass
class EscrowTimeouts:
    """Windows governing the scheduler's automatic transitions (days)."""
    creation_expiry_days: int = field(default_factory=lambda: _env_int('CREATION_EXPIRY_DAYS', 7))
    shipping_deadline_days: int = field(default_factory=lambda: _env_int('SHIPPING_DEADLINE_DAYS', 30))
    auto_release_days: int = field(default_factory=lambda: _env_int('AUTO_RELEASE_DAYS', 14))

    @property
    def creation_expiry(self) -> timedelta:
        return timedelta(days=self.creation_expiry_days)

    @property
    def shipping_deadline(self) -> timedelta:
        return timedelta(days=self.shipping_deadline_days)

    @property
    def auto_release(self) -> timedelta:
        return timedelta(days=self.auto_release_days)


@dataclass
class SchedulerConfig:
    """Sweep intervals (seconds) and batch sizing."""
    auto_release_interval: int = field(default_factory=lambda: _env_int('AUTO_RELEASE_INTERVAL', 3600))
    auto_refund_interval: int = field(default_factory=lambda: _env_int('AUTO_REFUND_INTERVAL', 6 * 3600))
    expiry_interval: int = field(default_factory=lambda: _env_int('EXPIRY_INTERVAL', 24 * 3600))
    reconciliation_interval: int = field(default_factory=lambda: _env_int('RECONCILIATION_INTERVAL', 3600))
    backfill_interval: int = field(default_factory=lambda: _env_int('BACKFILL_INTERVAL', 600))
    batch_size: int = field(default_factory=lambda: _env_int('SCHEDULER_BATCH_SIZE', 100))
    reconciliation_heal: bool = field(default_factory=lambda: _env_bool('RECONCILIATION_HEAL', True))
    enabled: bool = field(default_factory=lambda: _env_bool('SCHEDULER_ENABLED', True))


@dataclass
class FiatConfig:
    """Fiat payment provider (Xendit) configuration."""
    secret_key: str = field(default_factory=lambda: _env('XENDIT_SECRET_KEY', ''))
    callback_token: str = field(default_factory=lambda: _env('XENDIT_CALLBACK_TOKEN', ''))
    api_base: str = field(default_factory=lambda: _env('XENDIT_API_BASE', 'https://api.xendit.co'))
    request_timeout: int = field(default_factory=lambda: _env_int('FIAT_REQUEST_TIMEOUT', 30))
    currency: str = field(default_factory=lambda: _env('FIAT_CURRENCY', 'IDR'))
    idr_per_usdc: int = field(default_factory=lambda: _env_int('IDR_PER_USDC', 16000))
    frontend_url: str = field(default_factory=lambda: _env('FRONTEND_URL', 'http://localhost:3000'))
    payment_methods: List[str] = field(default_factory=lambda: _env_json(
        'XENDIT_PAYMENT_METHODS',
        '["QRIS", "OVO", "DANA", "LINKAJA", "BCA", "BNI", "BRI", "MANDIRI"]'))

    @property
    def mock_mode(self) -> bool:
        return not self.secret_key


@dataclass
class APIConfig:
    """API server configuration."""
    host: str = field(default_factory=lambda: _env('API_HOST', '0.0.0.0'))
    port: int = field(default_factory=lambda: _env_int('API_PORT', 3001))
    debug: bool = field(default_factory=lambda: _env_bool('API_DEBUG', False))
    cors_origins: list = field(default_factory=lambda: _env_json('CORS_ORIGINS', '["http://localhost:3000"]'))
    rate_limit: str = field(default_factory=lambda: _env('API_RATE_LIMIT', '100 per minute'))
    max_content_length: int = field(default_factory=lambda: _env_int('API_MAX_CONTENT_LENGTH', 1048576))  # 1MB
    secret_key: str = field(default_factory=lambda: _env('API_SECRET_KEY', os.urandom(32).hex()))


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = field(default_factory=lambda: _env('LOG_LEVEL', 'INFO'))
    format: str = field(default_factory=lambda: _env('LOG_FORMAT', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    file_path: Optional[str] = field(default_factory=lambda: os.getenv('LOG_FILE_PATH'))
    max_file_size: int = field(default_factory=lambda: _env_int('LOG_MAX_FILE_SIZE', 10485760))  # 10MB
    backup_count: int = field(default_factory=lambda: _env_int('LOG_BACKUP_COUNT', 5))
    json_format: bool = field(default_factory=lambda: _env_bool('LOG_JSON_FORMAT', False))


@dataclass
class SecurityConfig:
    """Security configuration."""
    # Operators allowed to resolve disputes and read reconciliation reports
    admin_tokens: list = field(default_factory=lambda: _env_json('ADMIN_TOKENS', '[]'))

    enable_api_key_auth: bool = field(default_factory=lambda: _env_bool('ENABLE_API_KEY_AUTH', False))
    api_keys: list = field(default_factory=lambda: _env_json('API_KEYS', '[]'))

    enable_rate_limiting: bool = field(default_factory=lambda: _env_bool('ENABLE_RATE_LIMITING', True))
    rate_limit_storage: str = field(default_factory=lambda: _env('RATE_LIMIT_STORAGE', 'memory://'))

    max_address_length: int = field(default_factory=lambda: _env_int('MAX_ADDRESS_LENGTH', 64))
    max_text_length: int = field(default_factory=lambda: _env_int('MAX_TEXT_LENGTH', 2000))


class ProductionConfig:
    """Main production configuration class."""

    def __init__(self):
        self.database = DatabaseConfig()
        self.ledger = LedgerConfig()
        self.timeouts = EscrowTimeouts()
        self.scheduler = SchedulerConfig()
        self.fiat = FiatConfig()
        self.api = APIConfig()
        self.logging = LoggingConfig()
        self.security = SecurityConfig()

        self.environment = os.getenv('ENVIRONMENT', 'production')
        self.version = os.getenv('APP_VERSION', '1.0.0')
        self.build_number = os.getenv('BUILD_NUMBER', 'unknown')

        self._validate_config()

    def _validate_config(self):
        """Validate critical configuration values."""
        errors = []

        if not self.database.use_sqlite and not self.database.password:
            errors.append("Database password is required for PostgreSQL")

        if self.ledger.enabled and not self.ledger.escrow_contract_address:
            errors.append("VOUCH_ESCROW_ADDRESS is required when the ledger is enabled")

        if self.ledger.enabled and not self.ledger.relayer_address:
            errors.append("LEDGER_RELAYER_ADDRESS is required when the ledger is enabled")

        for name in ('creation_expiry_days', 'shipping_deadline_days', 'auto_release_days'):
            if getattr(self.timeouts, name) <= 0:
                errors.append(f"{name.upper()} must be positive")

        if self.scheduler.batch_size <= 0:
            errors.append("SCHEDULER_BATCH_SIZE must be positive")

        if self.fiat.idr_per_usdc <= 0:
            errors.append("IDR_PER_USDC must be positive")

        if len(self.api.secret_key) < 32:
            errors.append("API secret key must be at least 32 characters")

        if errors:
            raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

    def get_database_url(self) -> str:
        """Get database connection URL."""
        if self.database.use_sqlite:
            return f"sqlite:///{self.database.sqlite_path}"

        return (
            f"postgresql://{self.database.user}:{self.database.password}"
            f"@{self.database.host}:{self.database.port}/{self.database.name}"
            f"?sslmode={self.database.ssl_mode}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary (excluding sensitive data)."""
        config_dict = {}

        for attr_name in ('database', 'ledger', 'timeouts', 'scheduler', 'fiat',
                          'api', 'logging', 'security'):
            section = getattr(self, attr_name)
            section_dict = {}
            for key, value in section.__dict__.items():
                lowered = key.lower()
                if 'password' in lowered or 'secret' in lowered or 'token' in lowered or 'key' in lowered:
                    section_dict[key] = '***REDACTED***'
                else:
                    section_dict[key] = value
            config_dict[attr_name] = section_dict

        config_dict['environment'] = self.environment
        config_dict['version'] = self.version
        config_dict['build_number'] = self.build_number
        return config_dict


_config: Optional[ProductionConfig] = None


def get_config() -> ProductionConfig:
    """Get the global configuration instance, creating it on first use."""
    global _config
    if _config is None:
        _config = ProductionConfig()
    return _config


def reload_config() -> ProductionConfig:
    """Reload configuration from environment variables."""
    global _config
    _config = ProductionConfig()
    return _config
