#!/usr/bin/env python3
"""
📊 Production Logger for Vouch Escrow
Structured logging with correlation IDs and escrow lifecycle events
"""

import inspect
import functools
import logging
import logging.handlers
import json
import sys
import time
import uuid
import traceback
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextlib import contextmanager
from threading import local

# Thread-local storage for correlation IDs
_local = local()


def get_correlation_id() -> Optional[str]:
    return getattr(_local, 'correlation_id', None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_entry['correlation_id'] = correlation_id

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain-text formatter that appends extra fields as key=value pairs."""

    def format(self, record):
        message = super().format(record)
        extra_fields = getattr(record, 'extra_fields', None)
        if extra_fields:
            pairs = ' '.join(f"{key}={value}" for key, value in extra_fields.items())
            message = f"{message} | {pairs}"
        return message


class ProductionLogger:
    """Production-ready logger with keyword context fields."""

    def __init__(self, name: str, config=None):
        self.name = name
        self.config = config
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self):
        """Set up logger with handlers and formatters."""
        self.logger.handlers.clear()
        self.logger.propagate = False

        log_level = getattr(logging, (self.config.logging.level if self.config else 'INFO').upper())
        self.logger.setLevel(log_level)

        log_format = (self.config.logging.format if self.config else
                      '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        json_format = bool(self.config and self.config.logging.json_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(StructuredFormatter() if json_format else KeyValueFormatter(log_format))
        self.logger.addHandler(console_handler)

        if self.config and self.config.logging.file_path:
            directory = os.path.dirname(self.config.logging.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                self.config.logging.file_path,
                maxBytes=self.config.logging.max_file_size,
                backupCount=self.config.logging.backup_count
            )
            file_handler.setFormatter(StructuredFormatter() if json_format else KeyValueFormatter(log_format))
            self.logger.addHandler(file_handler)

    @contextmanager
    def correlation_context(self, correlation_id: Optional[str] = None):
        """Context manager for correlation ID tracking."""
        if correlation_id is None:
            correlation_id = str(uuid.uuid4())

        old_correlation_id = get_correlation_id()
        _local.correlation_id = correlation_id

        try:
            yield correlation_id
        finally:
            if old_correlation_id:
                _local.correlation_id = old_correlation_id
            elif hasattr(_local, 'correlation_id'):
                delattr(_local, 'correlation_id')

    def _log_with_extra(self, level: int, message: str, extra_fields: Optional[Dict[str, Any]] = None,
                        exc_info=None):
        """Log message with extra fields."""
        if not self.logger.isEnabledFor(level):
            return
        record = self.logger.makeRecord(
            self.logger.name, level, __file__, 0, message, (), exc_info
        )
        if extra_fields:
            record.extra_fields = extra_fields
        self.logger.handle(record)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        self._log_with_extra(logging.CRITICAL, message, kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback."""
        self._log_with_extra(logging.ERROR, message, kwargs, exc_info=sys.exc_info())

    # Escrow lifecycle logging
    def log_transition(self, escrow_id: str, transition: str, from_status: str,
                       to_status: str, actor: str, changed: bool):
        """Log a committed (or idempotent) lifecycle transition."""
        self.info("Escrow transition applied" if changed else "Escrow transition already applied",
                  escrow_id=escrow_id,
                  transition=transition,
                  from_status=from_status,
                  to_status=to_status,
                  actor=actor,
                  event_type="escrow_transition")

    def log_chain_call(self, operation: str, ledger_escrow_id: Optional[int], success: bool,
                       duration: float, tx_hash: Optional[str] = None,
                       already_applied: bool = False, error: Optional[str] = None):
        """Log a settlement contract call."""
        fields = dict(operation=operation,
                      ledger_escrow_id=ledger_escrow_id,
                      success=success,
                      duration_ms=duration * 1000,
                      tx_hash=tx_hash,
                      already_applied=already_applied,
                      event_type="chain_call")
        if success:
            self.info("Ledger call completed", **fields)
        else:
            self.error("Ledger call failed", error=error, **fields)

    def log_sweep(self, job: str, found: int, processed: int, raced: int,
                  failed: int, duration: float):
        """Log the outcome of a scheduler sweep."""
        self.info("Sweep completed",
                  job=job,
                  found=found,
                  processed=processed,
                  raced=raced,
                  failed=failed,
                  duration_ms=duration * 1000,
                  event_type="scheduler_sweep")

    def log_divergence(self, escrow_id: str, ledger_escrow_id: int,
                       stored_status: str, ledger_status: str):
        """Log a ledger/record-store divergence (alerting hook)."""
        self.warning("Ledger divergence detected",
                     escrow_id=escrow_id,
                     ledger_escrow_id=ledger_escrow_id,
                     stored_status=stored_status,
                     ledger_status=ledger_status,
                     event_type="ledger_divergence")

    def log_api_request(self, method: str, path: str, status_code: int,
                        response_time: float):
        """Log API request with metrics."""
        self.info("API request processed",
                  method=method,
                  path=path,
                  status_code=status_code,
                  response_time_ms=response_time * 1000,
                  event_type="api_request")

    def log_error_with_context(self, error: Exception, context: Dict[str, Any]):
        """Log error with additional context."""
        self.error(f"Error occurred: {str(error)}",
                   error_type=type(error).__name__,
                   error_message=str(error),
                   context=context,
                   event_type="error")

    def log_performance_metric(self, operation: str, duration: float,
                               success: bool, metadata: Optional[Dict] = None):
        """Log performance metrics."""
        self.debug("Performance metric",
                   operation=operation,
                   duration_ms=duration * 1000,
                   success=success,
                   metadata=metadata or {},
                   event_type="performance_metric")

    def log_security_event(self, event_type: str, severity: str,
                           details: Dict[str, Any]):
        """Log security-related events."""
        self.warning("Security event",
                     security_event_type=event_type,
                     severity=severity,
                     details=details,
                     event_type="security_event")


class LoggerFactory:
    """Factory for creating production loggers."""

    _loggers: Dict[str, ProductionLogger] = {}
    _config = None

    @classmethod
    def set_config(cls, config):
        """Set global configuration for all loggers."""
        cls._config = config
        cls._loggers.clear()

    @classmethod
    def get_logger(cls, name: str) -> ProductionLogger:
        """Get or create a logger instance."""
        if name not in cls._loggers:
            cls._loggers[name] = ProductionLogger(name, cls._config)
        return cls._loggers[name]

    @classmethod
    def get_coordinator_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.coordinator')

    @classmethod
    def get_scheduler_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.scheduler')

    @classmethod
    def get_ledger_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.ledger')

    @classmethod
    def get_payment_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.payment')

    @classmethod
    def get_database_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.database')

    @classmethod
    def get_api_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.api')

    @classmethod
    def get_security_logger(cls) -> ProductionLogger:
        return cls.get_logger('vouch.security')


def log_performance(operation_name: str):
    """Decorator to log performance metrics for sync and async callables."""
    def decorator(func):
        def _record(start_time, error):
            logger = LoggerFactory.get_logger(f'vouch.performance.{func.__module__}')
            logger.log_performance_metric(
                operation=operation_name,
                duration=time.time() - start_time,
                success=error is None,
                metadata={'function': func.__name__, 'error': str(error) if error else None}
            )

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.time()
                error = None
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    error = e
                    raise
                finally:
                    _record(start_time, error)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            error = None
            try:
                return func(*args, **kwargs)
            except Exception as e:
                error = e
                raise
            finally:
                _record(start_time, error)
        return wrapper
    return decorator


def log_errors(logger_name: str = None):
    """Decorator to log unexpected errors with call context, then re-raise."""
    def decorator(func):
        def _log(e, args, kwargs):
            logger = LoggerFactory.get_logger(logger_name or f'vouch.{func.__module__}')
            context = {
                'function': func.__name__,
                'args': str(args)[:200],
                'kwargs': str(kwargs)[:200]
            }
            logger.log_error_with_context(e, context)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _log(e, args, kwargs)
                    raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _log(e, args, kwargs)
                raise
        return wrapper
    return decorator
